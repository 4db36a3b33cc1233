"""Persists the job list to a JSON file so queued work survives restarts."""
import json
import time
import logging
from pathlib import Path
from typing import List, Dict, Any

import aiofiles
import aiofiles.os


class JobStore:
    """Reads and writes the job list as a JSON array of job records."""

    def __init__(self, path: Path):
        """
        Initializes the JobStore.

        Args:
            path: The JSON file holding the job list.
        """
        self.path = path
        self.logger = logging.getLogger(__name__)

    async def load(self) -> List[Dict[str, Any]]:
        """
        Reads the persisted job records.

        A missing file yields an empty list. An unreadable or malformed file is
        backed up next to the original and an empty list is returned.
        """
        if not await aiofiles.os.path.exists(self.path):
            return []
        try:
            async with aiofiles.open(self.path, 'r', encoding='utf-8') as f:
                data = json.loads(await f.read())
            if not isinstance(data, list):
                raise ValueError(f"expected a list of jobs, got {type(data).__name__}")
            return [record for record in data if isinstance(record, dict)]
        except (ValueError, OSError) as e:
            self.logger.error(f"Error loading {self.path}: {e}. Backing up and starting with an empty list.")
            try:
                backup_path = self.path.with_suffix(f".{int(time.time())}.bak")
                await aiofiles.os.rename(self.path, backup_path)
                self.logger.info(f"Backed up corrupted job list to {backup_path}")
            except OSError as backup_e:
                self.logger.error(f"Could not back up corrupted job list: {backup_e}")
            return []

    async def save(self, records: List[Dict[str, Any]]):
        """
        Writes the job records atomically.

        Raises:
            OSError: If the file cannot be written.
        """
        await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        async with aiofiles.open(tmp_path, 'w', encoding='utf-8') as f:
            await f.write(json.dumps(records, ensure_ascii=False, indent=2))
        await aiofiles.os.replace(tmp_path, self.path)
        self.logger.debug(f"Saved {len(records)} job(s) to {self.path}")
