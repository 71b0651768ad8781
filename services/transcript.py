"""
services/transcript.py
Fetch YouTube video transcripts using youtube-transcript-api v1.x

Design:
- Asks the PO-token cache for a session once per fetch; the visitor id goes out
  as X-Goog-Visitor-Id so caption requests look like one attested session
- No token is not an error: we log a warning and fetch without attestation
- The blocking caption client runs in a worker thread, bounded by CAPTION_TIMEOUT;
  each of its requests is also bounded by the HTTP timeout
- Graceful error handling with user-friendly messages
"""

import asyncio
import functools
import logging
from typing import Optional

import requests
from youtube_transcript_api import YouTubeTranscriptApi
from youtube_transcript_api._errors import (
    TranscriptsDisabled,
    NoTranscriptFound,
    VideoUnavailable,
)
from youtube_transcript_api.proxies import GenericProxyConfig

from services import config
from services.po_token import TokenCapability, get_token

logger = logging.getLogger(__name__)


def _build_api(capability: Optional[TokenCapability]) -> YouTubeTranscriptApi:
    session = requests.Session()
    # bounds each request, so a worker abandoned by wait_for still finishes
    session.request = functools.partial(session.request, timeout=config.HTTP_TIMEOUT_SECONDS)
    session.headers.update({"User-Agent": config.USER_AGENT, "Accept-Language": "en-US"})
    if capability is not None:
        session.headers["X-Goog-Visitor-Id"] = capability.visitor_id

    proxy_config = None
    if config.PROXY_URL:
        proxy_config = GenericProxyConfig(http_url=config.PROXY_URL, https_url=config.PROXY_URL)
    return YouTubeTranscriptApi(proxy_config=proxy_config, http_client=session)


def _fetch(api: YouTubeTranscriptApi, video_id: str) -> tuple[str, str]:
    try:
        transcript_list = api.list(video_id)

        # Priority: English → any manual → any auto-generated
        try:
            transcript = transcript_list.find_transcript(["en"])
        except NoTranscriptFound:
            try:
                transcript = transcript_list.find_manually_created_transcript(
                    [t.language_code for t in transcript_list]
                )
            except NoTranscriptFound:
                transcript = transcript_list.find_generated_transcript(
                    [t.language_code for t in transcript_list]
                )

        fetched = transcript.fetch()
        full_text = " ".join(entry.text for entry in fetched)
        return full_text.strip(), transcript.language_code

    except TranscriptsDisabled:
        raise ValueError("❌ Transcripts are disabled for this video.")
    except NoTranscriptFound:
        raise ValueError("❌ No transcript found. This video may not have captions.")
    except VideoUnavailable:
        raise ValueError("❌ Video unavailable or invalid URL.")
    except Exception as e:
        raise ValueError(f"❌ Could not fetch transcript: {str(e)}")


async def get_transcript(video_id: str) -> tuple[str, str]:
    """
    Fetch the full transcript for a YouTube video.

    Returns:
        (full_text, language_code)

    Raises:
        ValueError with a user-friendly message on failure.
    """
    capability = await get_token()
    if capability is None:
        logger.warning("[transcript] No PO token for %s, fetching without attestation", video_id)

    api = _build_api(capability)
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(_fetch, api, video_id),
            timeout=config.CAPTION_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        raise ValueError("❌ Timed out fetching the transcript. Please try again.")
