"""YouTube channel adapter: lists recent videos and pulls auto-transcripts with yt-dlp."""

from __future__ import annotations

import asyncio
import json
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from hypedelta.ingest import register_source
from hypedelta.ingest.base import BaseSource, SourceFetchError
from hypedelta.models import RawItem, Source, to_naive_utc

logger = logging.getLogger(__name__)

DEFAULT_MAX_TRANSCRIPTS = 10


def channel_url(identifier: str) -> str:
    """Accept a full URL, a UC... channel id, or an @handle."""
    if identifier.startswith("http"):
        return identifier
    if identifier.startswith("UC") and len(identifier) == 24:
        return f"https://www.youtube.com/channel/{identifier}/videos"
    return f"https://www.youtube.com/@{identifier.lstrip('@')}/videos"


def parse_json3(data: dict) -> str:
    """Flatten a json3 subtitle document into plain text."""
    parts = []
    for event in data.get("events", []):
        for seg in event.get("segs") or []:
            text = seg.get("utf8", "")
            if text and text != "\n":
                parts.append(text.strip())
    return " ".join(p for p in parts if p)


@register_source("youtube")
class YouTubeSource(BaseSource):
    """Recent uploads; the body is the transcript, or the description if none exists."""

    default_max_items = 15

    @property
    def name(self) -> str:
        return "youtube"

    async def fetch(self, source: Source) -> list[RawItem]:
        url = channel_url(source.identifier)
        try:
            listing = json.loads(await self._run_ytdlp(
                "--flat-playlist", "--dump-single-json",
                "--playlist-end", str(self.max_items), url,
            ))
        except (RuntimeError, FileNotFoundError, TimeoutError, json.JSONDecodeError) as exc:
            raise SourceFetchError(source, f"could not list videos: {exc}") from exc

        max_transcripts = self.options.get("max_transcripts", DEFAULT_MAX_TRANSCRIPTS)
        items = []
        for i, video in enumerate(listing.get("entries") or []):
            video_id = video.get("id")
            if not video_id:
                continue
            info: dict = {}
            transcript = ""
            if i < max_transcripts:
                try:
                    info, transcript = await self._fetch_transcript(video_id)
                except (RuntimeError, TimeoutError) as exc:
                    logger.warning("Transcript failed for video %s: %s", video_id, exc)

            description = info.get("description") or video.get("description") or ""
            body = transcript or description
            if not body:
                continue

            upload_date = info.get("upload_date")
            published_at = None
            if upload_date:
                published_at = datetime.strptime(upload_date, "%Y%m%d")
            elif video.get("timestamp"):
                published_at = to_naive_utc(
                    datetime.fromtimestamp(video["timestamp"], tz=timezone.utc)
                )

            items.append(
                RawItem(
                    source_id=source.id,
                    external_id=video_id,
                    title=video.get("title") or info.get("title", ""),
                    body=body,
                    url=f"https://www.youtube.com/watch?v={video_id}",
                    author=source.name or info.get("channel") or listing.get("channel", ""),
                    published_at=published_at,
                    metadata={
                        "has_transcript": bool(transcript),
                        "duration": video.get("duration") or info.get("duration"),
                        "view_count": video.get("view_count") or info.get("view_count"),
                    },
                )
            )

        logger.info("YouTube fetched %d videos for %s", len(items), source.identifier)
        return items

    async def _fetch_transcript(self, video_id: str) -> tuple[dict, str]:
        """Download info JSON and English auto-subs (json3) for one video."""
        await self.limiter.acquire("youtube")
        with tempfile.TemporaryDirectory() as tmp:
            await self._run_ytdlp(
                "--skip-download", "--write-info-json",
                "--write-subs", "--write-auto-subs",
                "--sub-langs", "en.*,en", "--sub-format", "json3",
                "-o", str(Path(tmp) / "%(id)s.%(ext)s"),
                f"https://www.youtube.com/watch?v={video_id}",
            )
            info_path = Path(tmp) / f"{video_id}.info.json"
            info = json.loads(info_path.read_text()) if info_path.exists() else {}
            transcript = ""
            for sub_path in sorted(Path(tmp).glob(f"{video_id}*.json3")):
                transcript = parse_json3(json.loads(sub_path.read_text()))
                if transcript:
                    break
        return info, transcript

    async def _run_ytdlp(self, *args: str) -> str:
        binary = self.options.get("ytdlp_path", "yt-dlp")
        timeout = self.options.get("timeout", 120)
        proc = await asyncio.create_subprocess_exec(
            binary, "--no-warnings", *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TimeoutError(f"yt-dlp timed out after {timeout}s")
        if proc.returncode != 0:
            raise RuntimeError(
                f"yt-dlp exited with code {proc.returncode}: {stderr.decode().strip()[:200]}"
            )
        return stdout.decode()
