"""Message conversion between LINE and Discord shapes."""

import logging
import re
from typing import Optional

from .models import DiscordMessage
from .platforms.base import LineSender

logger = logging.getLogger("linecord.convert")

LINE_TEXT_LIMIT = 5000

_MAPS_URL = re.compile(r"https://www\.google\.com/maps\?q=([+-]?\d+(?:\.\d+)?),([+-]?\d+(?:\.\d+)?)")
# Bare "35.6895, 139.6917" as the whole message.
_COORDINATES = re.compile(r"^\s*([+-]?\d{1,2}\.\d+)\s*,\s*([+-]?\d{1,3}\.\d+)\s*$")

_MEDIA_EXTENSIONS = {"image": "jpg", "video": "mp4", "audio": "m4a"}


def maps_url(latitude: float, longitude: float) -> str:
    return f"https://www.google.com/maps?q={latitude},{longitude}"


def detect_location(text: str) -> Optional[tuple[float, float]]:
    """Find a Google Maps link or a bare coordinate pair in text.

    Returns:
        (latitude, longitude) if one is present and in range, else None.
    """
    if not text:
        return None
    match = _MAPS_URL.search(text) or _COORDINATES.match(text)
    if not match:
        return None
    lat, lng = float(match.group(1)), float(match.group(2))
    if -90 <= lat <= 90 and -180 <= lng <= 180:
        return lat, lng
    return None


# ── LINE → Discord ───────────────────────────────────────────

def format_location(message: dict) -> str:
    lat, lng = message.get("latitude"), message.get("longitude")
    lines = ["📍 **Location**"]
    if message.get("title"):
        lines.append(f"**{message['title']}**")
    if message.get("address"):
        lines.append(f"Address: {message['address']}")
    lines.append(f"Map: {maps_url(lat, lng)}")
    lines.append(f"Coordinates: {lat}, {lng}")
    return "\n".join(lines)


async def line_event_to_discord(
    event: dict, line: LineSender,
) -> tuple[str, list[tuple[str, bytes]]]:
    """Render a LINE message event for Discord.

    Media is downloaded as-is and attached; nothing is transcoded.

    Returns:
        (content, files)
    """
    message = event.get("message") or {}
    msg_type = message.get("type", "text")
    msg_id = str(message.get("id", ""))

    if msg_type == "text":
        return message.get("text") or "", []

    if msg_type == "location":
        return format_location(message), []

    if msg_type == "sticker":
        return f"[Sticker {message.get('packageId', '?')}/{message.get('stickerId', '?')}]", []

    if msg_type in ("image", "video", "audio", "file"):
        data = await line.fetch_content(msg_id)
        if msg_type == "file":
            name = message.get("fileName") or f"{msg_id}.bin"
        else:
            name = f"{msg_id}.{_MEDIA_EXTENSIONS[msg_type]}"
        return f"📎 {msg_type}", [(name, data)]

    logger.info(f"Unsupported LINE message type: {msg_type}")
    return f"Unsupported message type: {msg_type}", []


# ── Discord → LINE ───────────────────────────────────────────

def _attachment_to_line(attachment: dict) -> dict:
    url = attachment.get("url", "")
    content_type = attachment.get("content_type") or ""
    if content_type.startswith("image/"):
        return {"type": "image", "originalContentUrl": url, "previewImageUrl": url}
    if content_type.startswith("video/"):
        preview = attachment.get("preview_url") or url
        return {"type": "video", "originalContentUrl": url, "previewImageUrl": preview}
    # LINE cannot push arbitrary files; send the link.
    name = attachment.get("filename") or "file"
    return {"type": "text", "text": f"📎 {name}: {url}"}


def discord_message_to_line(message: DiscordMessage) -> list[dict]:
    """Convert a Discord message into LINE message objects (attachments first)."""
    result = [_attachment_to_line(a) for a in message.attachments if a.get("url")]

    text = (message.content or "").strip()
    if text:
        location = detect_location(text)
        if location:
            lat, lng = location
            result.append({
                "type": "location",
                "title": "Location",
                "address": maps_url(lat, lng)[:100],
                "latitude": lat,
                "longitude": lng,
            })
        else:
            result.append({"type": "text", "text": text[:LINE_TEXT_LIMIT]})
    return result
