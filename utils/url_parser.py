"""
utils/url_parser.py
Resolve the video ID a content-bound PO token should be minted for.
"""

import re

_VIDEO_ID = re.compile(r"^[A-Za-z0-9_-]{11}$")

# watch?v=, youtu.be/, shorts/, embed/, v/ and live/ links
_YT_REGEX = re.compile(
    r"(?:https?://)?(?:www\.|m\.|music\.)?"
    r"(?:youtube\.com/(?:watch\?(?:.*&)?v=|shorts/|embed/|v/|live/)|youtu\.be/)"
    r"([A-Za-z0-9_-]{11})"
)


def is_video_id(text: str) -> bool:
    return bool(_VIDEO_ID.match(text))


def extract_video_id(text: str) -> str | None:
    """Return the 11-char video ID from a bare ID or a YouTube URL, or None."""
    text = text.strip()
    if is_video_id(text):
        return text
    match = _YT_REGEX.search(text)
    return match.group(1) if match else None
