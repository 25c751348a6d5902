"""Atom feed parsing for YouTube's PubSubHubbub notifications.

A notification body is a small Atom document holding either an ``<entry>``
for a published or edited video, or an ``<at:deleted-entry>`` tombstone for a
removed one::

    <feed xmlns:yt="http://www.youtube.com/xml/schemas/2015"
          xmlns="http://www.w3.org/2005/Atom">
      <entry>
        <id>yt:video:VIDEO_ID</id>
        <yt:videoId>VIDEO_ID</yt:videoId>
        <yt:channelId>CHANNEL_ID</yt:channelId>
        <title>Video title</title>
        <link rel="alternate" href="http://www.youtube.com/watch?v=VIDEO_ID"/>
        <author><name>Channel title</name><uri>...</uri></author>
        <published>2015-03-06T21:40:57+00:00</published>
        <updated>2015-03-09T19:05:24.552394234+00:00</updated>
      </entry>
    </feed>
"""
import logging
import xml.etree.ElementTree as ET
from datetime import datetime, UTC
from typing import List, Optional

from errors import ParseError
from models import FeedEvent, VideoUpdated, VideoDeleted, Unrecognized
from settings import settings

logger = logging.getLogger(__name__)

ATOM_NS = "http://www.w3.org/2005/Atom"
YT_NS = "http://www.youtube.com/xml/schemas/2015"
TOMBSTONE_NS = "http://purl.org/atompub/tombstones/1.0"
MEDIA_NS = "http://search.yahoo.com/mrss/"

VIDEO_ID_PREFIX = "yt:video:"
SHORTS_MARKER = "#shorts"


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _text(element: ET.Element, path: str) -> Optional[str]:
    found = element.find(path)
    if found is None or found.text is None:
        return None
    return found.text.strip() or None


def parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        raise ValueError("missing timestamp")
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


class FeedParser:
    """Turns a notification body into tagged feed events"""
    def __init__(self, shorts_max_seconds: int = settings.shorts_max_seconds):
        self.shorts_max_seconds = shorts_max_seconds

    def parse(self, body: bytes | str) -> List[FeedEvent]:
        try:
            root = ET.fromstring(body)
        except (ET.ParseError, ValueError) as e:
            raise ParseError(f"Invalid XML in notification: {e}", body if isinstance(body, bytes) else body.encode())

        if root.tag != f"{{{ATOM_NS}}}feed":
            raise ParseError(f"Expected an Atom feed, got <{root.tag}>", body if isinstance(body, bytes) else body.encode())

        events: List[FeedEvent] = []
        for child in root:
            if child.tag == f"{{{ATOM_NS}}}entry":
                events.append(self._parse_entry(child))
            elif child.tag == f"{{{TOMBSTONE_NS}}}deleted-entry":
                events.append(self._parse_deleted_entry(child))
            elif _local_name(child.tag).endswith("entry"):
                logger.info(f"Unrecognized feed element <{child.tag}>")
                events.append(Unrecognized(tag=child.tag))
        return events

    def video_events(self, body: bytes | str) -> List[VideoUpdated]:
        return [event for event in self.parse(body) if isinstance(event, VideoUpdated)]

    def _parse_entry(self, entry: ET.Element) -> VideoUpdated:
        video_id = _text(entry, f"{{{YT_NS}}}videoId")
        if video_id is None:
            entry_id = _text(entry, f"{{{ATOM_NS}}}id") or ""
            if entry_id.startswith(VIDEO_ID_PREFIX):
                video_id = entry_id[len(VIDEO_ID_PREFIX):]
        channel_id = _text(entry, f"{{{YT_NS}}}channelId")
        if not video_id or not channel_id:
            raise ParseError("Feed entry is missing the video id or channel id")

        try:
            published = parse_timestamp(_text(entry, f"{{{ATOM_NS}}}published"))
            updated_text = _text(entry, f"{{{ATOM_NS}}}updated")
            updated = parse_timestamp(updated_text) if updated_text else published
        except ValueError as e:
            raise ParseError(f"Invalid timestamp in entry for video {video_id}: {e}")

        link = None
        links = []
        for element in entry.findall(f"{{{ATOM_NS}}}link"):
            href = element.get("href")
            if not href:
                continue
            links.append(href)
            if element.get("rel", "alternate") == "alternate" and link is None:
                link = href

        title = _text(entry, f"{{{ATOM_NS}}}title") or ""
        return VideoUpdated(
            video_id=video_id,
            channel_id=channel_id,
            title=title,
            link=link,
            author_name=_text(entry, f"{{{ATOM_NS}}}author/{{{ATOM_NS}}}name"),
            published=published,
            updated=updated,
            is_short=self._is_short(entry, title, links),
        )

    def _is_short(self, entry: ET.Element, title: str, links: List[str]) -> bool:
        duration = self._duration_seconds(entry)
        if duration is not None:
            return duration <= self.shorts_max_seconds

        if any("/shorts/" in href for href in links):
            return True
        description = _text(entry, f".//{{{MEDIA_NS}}}description") or ""
        return SHORTS_MARKER in title.lower() or SHORTS_MARKER in description.lower()

    def _duration_seconds(self, entry: ET.Element) -> Optional[int]:
        candidates = [
            (element, "seconds") for element in entry.iter(f"{{{YT_NS}}}duration")
        ] + [
            (element, "duration") for element in entry.iter(f"{{{MEDIA_NS}}}content")
        ]
        for element, attribute in candidates:
            value = element.get(attribute)
            if value is None:
                continue
            try:
                return int(float(value))
            except ValueError:
                logger.warning(f"Ignoring unparseable duration {value!r}")
        return None

    def _parse_deleted_entry(self, element: ET.Element) -> VideoDeleted:
        ref = element.get("ref", "")
        video_id = ref[len(VIDEO_ID_PREFIX):] if ref.startswith(VIDEO_ID_PREFIX) else ref
        channel_id = None
        uri = _text(element, f"{{{TOMBSTONE_NS}}}by/{{{ATOM_NS}}}uri")
        if uri:
            channel_id = uri.rstrip("/").rsplit("/", 1)[-1]

        deleted_at = None
        when = element.get("when")
        if when:
            try:
                deleted_at = parse_timestamp(when)
            except ValueError:
                logger.warning(f"Ignoring unparseable tombstone timestamp {when!r}")
        return VideoDeleted(video_id=video_id, channel_id=channel_id, deleted_at=deleted_at)
