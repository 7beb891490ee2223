"""
CSV and video intake.

Turns uploaded files into WorkItemInput-shaped dicts for
BatchCoordinator.create_batch(), which does the per-row validation.

CSV format:
    Columns: uuid (required), error_type, agent_id, priority (optional).
    Header names are case-insensitive and trimmed; priority defaults to
    'medium'. Blank lines are skipped.

        uuid,error_type,agent_id,priority
        uuid-123-456-789,language,AG001,high

Video uploads:
    Content type must be video/*, size at most MAX_VIDEO_MB. The file is
    streamed to UPLOAD_DIR under a generated id which becomes the item's
    external reference; video_url is the stored file's URI.
"""

import asyncio
import io
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional
from uuid import uuid4

import pandas as pd

from qc_backend.core.errors import ValidationError
from qc_backend.models import Priority, WorkItemKind


logger = logging.getLogger(__name__)


REQUIRED_COLUMNS = ['uuid']
OPTIONAL_COLUMNS = ['error_type', 'agent_id', 'priority']

_CHUNK_SIZE = 1024 * 1024


def parse_qc_csv(content: bytes) -> List[Dict[str, Any]]:
    """
    Parse an uploaded QC CSV into item dicts.

    Args:
        content: Raw file bytes (UTF-8, optional BOM).

    Returns:
        List of dicts with uuid, type, priority, error_type, agent_id.

    Raises:
        ValidationError: Unreadable file or missing required columns.
    """
    try:
        df = pd.read_csv(
            io.BytesIO(content),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            encoding='utf-8-sig',
        )
    except pd.errors.EmptyDataError:
        raise ValidationError("CSV file is empty")
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise ValidationError(f"CSV file could not be parsed: {e}")

    df.columns = [str(c).strip().lower() for c in df.columns]

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValidationError(
            f"CSV is missing required column(s): {', '.join(missing)}",
            details=[{'field': c, 'message': 'required column missing', 'row_number': None} for c in missing],
        )

    for column in OPTIONAL_COLUMNS:
        if column not in df.columns:
            df[column] = ''

    df = df[REQUIRED_COLUMNS + OPTIONAL_COLUMNS].apply(lambda s: s.str.strip())
    df['priority'] = df['priority'].str.lower().replace('', Priority.MEDIUM.value)

    rows = []
    for record in df.to_dict('records'):
        rows.append({
            'uuid': record['uuid'],
            'type': WorkItemKind.CSV_ROW.value,
            'priority': record['priority'],
            'error_type': record['error_type'] or None,
            'agent_id': record['agent_id'] or None,
        })

    logger.info(f"Parsed {len(rows)} rows from uploaded CSV")
    return rows


@dataclass
class StoredVideo:
    """A video persisted to the upload directory."""
    video_id: str
    path: Path
    size_bytes: int

    @property
    def uri(self) -> str:
        return self.path.resolve().as_uri()


def _copy_limited(source: BinaryIO, target: Path, max_bytes: int) -> int:
    written = 0
    with open(target, 'wb') as out:
        while True:
            chunk = source.read(_CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if written > max_bytes:
                raise ValidationError(f"File size must be less than {max_bytes // (1024 * 1024)}MB")
            out.write(chunk)
    return written


async def store_video(
    source: BinaryIO,
    filename: Optional[str],
    content_type: Optional[str],
    upload_dir: str,
    max_mb: int,
) -> StoredVideo:
    """
    Validate and save an uploaded video.

    Raises:
        ValidationError: Not a video, or larger than max_mb. No file is left
            behind on failure.
    """
    if not content_type or not content_type.startswith('video/'):
        raise ValidationError("Please upload a video file (MP4, AVI, MOV, etc.)")

    directory = Path(upload_dir)
    directory.mkdir(parents=True, exist_ok=True)

    video_id = uuid4().hex
    suffix = Path(filename).suffix if filename else ''
    target = directory / f"{video_id}{suffix}"

    try:
        size = await asyncio.to_thread(_copy_limited, source, target, max_mb * 1024 * 1024)
    except ValidationError:
        target.unlink(missing_ok=True)
        raise

    logger.info(f"Stored video {video_id} ({size} bytes) at {target}")
    return StoredVideo(video_id=video_id, path=target, size_bytes=size)


def remove_stored_video(video: StoredVideo) -> None:
    """Delete a stored upload, e.g. when the batch that referenced it is rejected."""
    video.path.unlink(missing_ok=True)


def video_item(video: StoredVideo, agent_id: Optional[str], error_type: Optional[str]) -> Dict[str, Any]:
    """Build the single-item payload for an uploaded video."""
    return {
        'uuid': video.video_id,
        'type': WorkItemKind.VIDEO.value,
        'priority': Priority.MEDIUM.value,
        'agent_id': agent_id,
        'error_type': error_type,
        'video_url': video.uri,
    }
