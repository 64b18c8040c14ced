"""Persistence sink writing the capture buffer as a JSON artifact.

The artifact is a JSON array of captured events. It is written to a
temporary file beside the destination and moved into place, so readers
either see the previous artifact or the complete new one.
"""

import json
import logging
import os
import uuid
from pathlib import Path
from typing import List, Optional, Sequence, Union

import aiofiles
import aiofiles.os

from .errors import PersistenceError
from ..models.capture import CapturedEvent

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_FILE = "powerbi-queries.json"


def serialize_events(events: Sequence[CapturedEvent]) -> str:
    """Serialize events to the artifact format. Pure function of its input."""
    records = [event.model_dump(mode="json") for event in events]
    return json.dumps(records, indent=2, ensure_ascii=False) + "\n"


class PersistenceSink:
    """Writes a capture buffer to a fixed output path, all or nothing."""

    def __init__(self, output_path: Union[str, Path] = DEFAULT_OUTPUT_FILE, write_empty: bool = True):
        """Initialize the sink.

        Args:
            output_path: Artifact destination
            write_empty: Whether an empty buffer still produces an (empty array) artifact
        """
        self.output_path = Path(output_path)
        self.write_empty = write_empty
        self.writes = 0

    async def persist(self, events: Sequence[CapturedEvent]) -> Optional[Path]:
        """Write the events to the output path.

        Returns:
            Path of the artifact, or None if the buffer was empty and empty
            artifacts are disabled

        Raises:
            PersistenceError: If the artifact could not be written
        """
        events: List[CapturedEvent] = list(events)

        if not events:
            logger.warning("No report query requests were captured")
            if not self.write_empty:
                logger.info("Empty artifact disabled; nothing written")
                return None

        payload = serialize_events(events)
        target = self.output_path
        tmp_path = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
                await f.write(payload)
                await f.flush()
                os.fsync(f.fileno())
            await aiofiles.os.replace(tmp_path, target)

        except Exception as e:
            logger.error(f"Failed to save capture artifact {target}: {e}")
            try:
                if tmp_path.exists():
                    tmp_path.unlink()
            except OSError as cleanup_error:
                logger.debug(f"Failed to remove temporary artifact: {cleanup_error}")
            raise PersistenceError(target, e) from e

        self.writes += 1
        logger.info(f"Saved {len(events)} captured events to {target}")
        return target
