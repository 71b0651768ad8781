"""
main.py
Entry point — mints a PO token for a fresh session and, optionally,
content-bound tokens for the video IDs given on the command line.

    python main.py                 # session token only
    python main.py dQw4w9WgXcQ     # plus a token bound to that video
"""

import argparse
import asyncio
import logging
import sys

from dotenv import load_dotenv

from services.po_token import clear_cache, get_token, minter_cache
from utils.url_parser import extract_video_id

# ── Logging ───────────────────────────────────────────────────────────────
logging.basicConfig(
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    level=logging.INFO,
)
logger = logging.getLogger(__name__)

# ── Load environment variables ─────────────────────────────────────────────
load_dotenv()


async def run(videos: list[str]) -> int:
    capability = await get_token()
    if capability is None:
        logger.error("No PO token could be generated; see the log above for the failing stage.")
        return 1

    print(f"visitor_data:  {capability.visitor_id}")
    print(f"session_token: {capability.session_token}")

    for text in videos:
        video_id = extract_video_id(text)
        if not video_id:
            logger.warning("Skipping %r: not a YouTube URL or video ID", text)
            continue
        token = await capability.mint_content_token(video_id)
        print(f"{video_id}:  {token}")

    logger.info("Cache stats: %s", minter_cache.stats())
    clear_cache()
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Mint YouTube PO tokens")
    parser.add_argument("videos", nargs="*", help="video IDs or URLs to mint content-bound tokens for")
    args = parser.parse_args()

    sys.exit(asyncio.run(run(args.videos)))


if __name__ == "__main__":
    main()
