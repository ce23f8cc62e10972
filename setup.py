"""
ClipNotes: setuptools build script.

Usage:
    # Development (editable install with test tools):
    pip install -e ".[test]"

    # Run the worker pool:
    python3 main.py serve
"""

from setuptools import setup

APP_NAME = "clipnotes"

setup(
    name=APP_NAME,
    version="1.0.0",
    description="Video and uploaded-media summarization job engine",
    packages=[
        "clipnotes",
        "clipnotes.core",
    ],
    py_modules=["main"],
    install_requires=[
        "requests>=2.28.0",
        "openai>=1.0.0",
        "boto3>=1.26.0",
        "botocore>=1.29.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    python_requires=">=3.10",
    entry_points={
        "console_scripts": [
            "clipnotes=main:main",
        ],
    },
)
