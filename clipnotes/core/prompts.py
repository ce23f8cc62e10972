"""Prompt builders for summarization, combining, titles and shareable names."""

SUMMARY_SCHEMA = """{
  "keypoints": ["emoji Key point 1", "emoji Key point 2", "..."],
  "summary": "Full summary text here.",
  "timestamps": ["00:00 - Section 1", "01:30 - Section 2", "..."]
}"""

_OUTPUT_RULES = """CRITICAL OUTPUT RULES:
- Return ONLY a pure, parseable JSON object; the response begins with { and ends with }.
- No commentary, no markdown, no code blocks.
- Use straight quotes and escape double quotes inside strings as \\".
- No trailing commas and no line breaks inside strings."""


def transcript_prompt(language: str, length: str, tone: str) -> str:
    return f"""You are a JSON-generating API. Your sole task is to return pure, valid JSON.

INPUT: Video captions, possibly in SRT format, or a plain transcript.

TASKS:
1. Clean the transcript: ignore caption timing lines, cue numbers and non-verbal cues such as [music].
2. Extract 4-8 key points: one concise sentence each, starting with ONE relevant emoji, taken directly from the content.
3. Write a {length.lower()} summary in {language}, tone {tone.lower()} (short≈100, medium≈200, long≈400 words).
4. Create a timestamp breakdown of the 3-5 most important sections, formatted "MM:SS - Description".

{_OUTPUT_RULES}

OUTPUT TEMPLATE:
{SUMMARY_SCHEMA}"""


def combine_prompt(language: str, length: str, tone: str) -> str:
    return f"""You are a precise JSON generator that strictly follows formatting rules.

INPUT: A JSON object with partial summaries of consecutive parts of one video ("summaries", each labeled "Part N"), plus all of their key points and timestamps.

TASKS:
1. Rewrite the partial summaries into one coherent {length.lower()} summary in {language}, tone {tone.lower()} (short≈100, medium≈200, long≈400 words). Do not simply concatenate them.
2. Synthesize 4-8 key points from the provided key points. Merge duplicates and near-duplicates; never repeat a point. Cover themes from every part.
3. Pick 3-5 timestamps, formatted "MM:SS - Description" or "HH:MM:SS - Description", that span the whole video: at least one near the beginning, one from the middle and one close to the end.

{_OUTPUT_RULES}

OUTPUT TEMPLATE:
{SUMMARY_SCHEMA}"""


def title_prompt(language: str) -> str:
    return f"Generate concise video titles based on captions in {language.lower()}."


def title_user_content(captions: str, limit: int) -> str:
    return f"Generate a title for a video based on these captions:\n\n{captions[:limit]}"


def slug_prompt(language: str) -> str:
    return (f"Generate a 2 word name for a shareable link based on the provided "
            f"video title in {language.lower()}.")


def slug_user_content(title: str, attempt: int) -> str:
    content = ("Generate a 2 word name for a shareable link based on this title. "
               "Separate the two words with \"-\" and answer with the name only")
    if attempt:
        content += f". Previous suggestions were taken, so propose a different one (try #{attempt + 1})"
    return f"{content}:\n\n{title}"
