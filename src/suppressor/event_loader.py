"""Event payload loading with validation.

Payloads are Event Grid deliveries saved to disk or piped on stdin (replay,
local testing). JSON is parsed with the YAML loader, so hand-written YAML
fixtures work as well.

SECURITY: Payload size is checked before parsing.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, TextIO

import yaml

from .config import MAX_EVENT_FILE_SIZE_BYTES
from .errors import EventLoadError

logger = logging.getLogger(__name__)


def parse_payload(content: str, source: str = "<payload>") -> Any:
    """Parse a JSON or YAML payload.

    Raises:
        EventLoadError: If the content is too large or not valid JSON/YAML.
    """
    if len(content.encode("utf-8")) > MAX_EVENT_FILE_SIZE_BYTES:
        raise EventLoadError(
            f"Payload exceeds maximum size of {MAX_EVENT_FILE_SIZE_BYTES} bytes: {source}"
        )

    try:
        payload = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise EventLoadError(f"Invalid JSON/YAML in {source}: {e}") from e

    if not isinstance(payload, (dict, list)):
        raise EventLoadError(f"Payload must be an object or a list of objects: {source}")

    return payload


def load_payload(path: Path) -> Any:
    """Load an event payload from a file.

    Raises:
        EventLoadError: If the file cannot be read or parsed.
    """
    if not path.exists():
        raise EventLoadError(f"Event file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise EventLoadError(f"Failed to stat event file {path}: {e}") from e

    if file_size > MAX_EVENT_FILE_SIZE_BYTES:
        raise EventLoadError(
            f"Event file exceeds maximum size of {MAX_EVENT_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise EventLoadError(f"Event file is not valid UTF-8: {path}: {e}") from e
    except OSError as e:
        raise EventLoadError(f"Failed to read event file {path}: {e}") from e

    payload = parse_payload(content, str(path))
    logger.info("Loaded event payload from %s", path)
    return payload


def load_stream(stream: TextIO, source: str = "<stdin>") -> Any:
    """Load an event payload from an open text stream.

    Raises:
        EventLoadError: If the stream cannot be decoded or parsed.
    """
    try:
        content = stream.read()
    except UnicodeDecodeError as e:
        raise EventLoadError(f"Payload is not valid UTF-8: {source}: {e}") from e
    return parse_payload(content, source)
