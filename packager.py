from __future__ import annotations

import json
import os
import re
import zipfile
from datetime import datetime, timezone
from email.utils import format_datetime
from pathlib import Path
from typing import List, Optional, Sequence
from urllib.parse import urlparse

from lxml import etree

from content import ExtractedContent, MediaFile
from errors import ArchiveIOError


WXR_VERSION = "1.2"
WXR_NAMESPACES = {
    "excerpt": "http://wordpress.org/export/1.2/excerpt/",
    "content": "http://purl.org/rss/1.0/modules/content/",
    "wfw": "http://wellformedweb.org/CommentAPI/",
    "dc": "http://purl.org/dc/elements/1.1/",
    "wp": "http://wordpress.org/export/1.2/",
}
# Characters XML 1.0 cannot carry, even inside CDATA.
XML_INVALID_RE = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f\ud800-\udfff\ufffe\uffff]")
BACKUP_TYPE_LABELS = {
    "full": "Full backup (content and media)",
    "database-only": "Database only (content, no media)",
}


def archive_file_name(website_url: str, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    stamp = now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    stamp = stamp.replace(":", "-").replace(".", "-")
    host = urlparse(website_url).hostname or "site"
    return f"{host}-backup-{stamp}.zip"


class ArchiveBuilder:
    """Packs extracted content into the downloadable ZIP layout.

    Layout::

        content.json
        site-info.json
        wordpress-export.xml
        media/<basename>
        restore-instructions.txt
    """

    def __init__(self, backup_dir: Path) -> None:
        self.backup_dir = Path(backup_dir)

    def build(self, job, content: ExtractedContent, media_files: Sequence[MediaFile]) -> str:
        now = datetime.now(timezone.utc)
        file_path = self.backup_dir / archive_file_name(job.website_url, now)
        temp_path = file_path.with_name(file_path.name + ".part")

        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(temp_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                zf.writestr("content.json", _json_bytes(content.to_dict()))
                zf.writestr("site-info.json", _json_bytes(job.site_info))
                zf.writestr("wordpress-export.xml", generate_wordpress_export(content, job.website_url, now))
                for name, data in media_files:
                    zf.writestr(f"media/{name}", data)
                zf.writestr("restore-instructions.txt", _text_bytes(generate_restore_instructions(job, now)))
            os.replace(temp_path, file_path)
        except (OSError, ValueError) as exc:
            raise ArchiveIOError(f"Failed to write backup archive {file_path.name}: {exc}") from exc
        finally:
            # Only a failed run leaves the temp file behind.
            if temp_path.exists():
                temp_path.unlink()

        return str(file_path)


def _text_bytes(text: str) -> bytes:
    # Lone surrogates from decoded JSON escapes cannot be written as UTF-8.
    return text.encode("utf-8", errors="replace")


def _json_bytes(value: object) -> bytes:
    return _text_bytes(json.dumps(value, indent=2, ensure_ascii=False))


def _clean(text: object) -> str:
    return XML_INVALID_RE.sub("", "" if text is None else str(text))


def _cdata(parent: etree._Element, tag: str, text: object) -> etree._Element:
    node = etree.SubElement(parent, tag)
    value = _clean(text)
    if "]]>" in value:
        node.text = value
    else:
        node.text = etree.CDATA(value)
    return node


def _plain(parent: etree._Element, tag: str, text: object) -> etree._Element:
    node = etree.SubElement(parent, tag)
    node.text = _clean(text)
    return node


def _wp(tag: str) -> str:
    return f"{{{WXR_NAMESPACES['wp']}}}{tag}"


def _rendered(value: object) -> str:
    if isinstance(value, dict):
        return str(value.get("rendered") or "")
    return str(value or "")


def _parse_date(value: object, fallback: datetime) -> datetime:
    if not value:
        return fallback
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return fallback
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def generate_wordpress_export(content: ExtractedContent, base_url: str = "", now: Optional[datetime] = None) -> bytes:
    """Render posts then pages as a WXR 1.2 document."""
    now = now or datetime.now(timezone.utc)
    rss = etree.Element("rss", version="2.0", nsmap=WXR_NAMESPACES)
    channel = etree.SubElement(rss, "channel")
    _plain(channel, "title", "WordPress Backup Export")
    _plain(channel, "description", "Generated by WordPress Backup Tool")
    _plain(channel, "pubDate", format_datetime(now.astimezone(timezone.utc), usegmt=True))
    _plain(channel, "language", "en-US")
    _plain(channel, _wp("wxr_version"), WXR_VERSION)
    _cdata(channel, _wp("base_site_url"), base_url)
    _cdata(channel, _wp("base_blog_url"), base_url)

    entries: List[tuple] = [(post, "post") for post in content.posts or []]
    entries += [(page, "page") for page in content.pages or []]
    for index, (entry, default_type) in enumerate(entries, start=1):
        _append_item(channel, entry or {}, index, default_type, now)

    return etree.tostring(rss, xml_declaration=True, encoding="UTF-8", pretty_print=True)


def _append_item(channel: etree._Element, entry: dict, index: int, default_type: str, now: datetime) -> None:
    published = _parse_date(entry.get("date_gmt") or entry.get("date"), now)
    raw_date = str(entry.get("date") or published.isoformat(timespec="seconds"))
    raw_date_gmt = str(entry.get("date_gmt") or raw_date)

    item = etree.SubElement(channel, "item")
    _cdata(item, "title", _rendered(entry.get("title")) or f"Post {index}")
    _plain(item, "link", entry.get("link") or "")
    _plain(item, "pubDate", format_datetime(published.astimezone(timezone.utc), usegmt=True))
    _cdata(item, f"{{{WXR_NAMESPACES['dc']}}}creator", "admin")
    _cdata(item, f"{{{WXR_NAMESPACES['content']}}}encoded", _rendered(entry.get("content")))
    _cdata(item, f"{{{WXR_NAMESPACES['excerpt']}}}encoded", _rendered(entry.get("excerpt")))
    _plain(item, _wp("post_id"), entry.get("id") or index)
    _cdata(item, _wp("post_date"), raw_date)
    _cdata(item, _wp("post_date_gmt"), raw_date_gmt)
    _cdata(item, _wp("comment_status"), entry.get("comment_status") or "open")
    _cdata(item, _wp("ping_status"), entry.get("ping_status") or "open")
    _cdata(item, _wp("post_name"), entry.get("slug") or f"post-{index}")
    _cdata(item, _wp("status"), entry.get("status") or "publish")
    _plain(item, _wp("post_parent"), entry.get("parent") or 0)
    _plain(item, _wp("menu_order"), entry.get("menu_order") or 0)
    _cdata(item, _wp("post_type"), entry.get("type") or default_type)
    _cdata(item, _wp("post_password"), "")
    _plain(item, _wp("is_sticky"), 1 if entry.get("sticky") else 0)


def generate_restore_instructions(job, now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    options = job.options or {}
    backup_label = BACKUP_TYPE_LABELS.get(job.backup_type, job.backup_type)
    lines = [
        "WordPress Backup Restore Instructions",
        "=====================================",
        "",
        f"This backup was created on: {now.strftime('%Y-%m-%d %H:%M UTC')}",
        f"Source website: {job.website_url}",
        f"Backup type: {backup_label}",
        "",
        "Files included:",
        "- content.json: Raw content data from the WordPress REST API",
        "- wordpress-export.xml: WordPress WXR export file",
        "- site-info.json: Site information detected during the backup",
        "- media/: Media files (full backups with media only)",
        "",
    ]
    if options.get("assume_importer", True):
        lines += [
            "To restore with the WordPress Importer:",
            "1. Install WordPress on your new server",
            "2. Go to WordPress Admin > Tools > Import",
            "3. Install the WordPress Importer plugin",
            "4. Upload the wordpress-export.xml file",
            "5. Follow the import wizard",
            "6. Upload media files to wp-content/uploads/",
        ]
    else:
        lines += [
            "To restore manually:",
            "1. Open content.json to see all posts and pages",
            "2. Recreate the content in your new WordPress installation",
            "3. Upload media files to the appropriate directories",
        ]
    lines += ["", "Support: This backup was created using WordPress Backup Tool", ""]
    return "\n".join(lines)
