import json
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Sequence

from pydantic import TypeAdapter

from src.core.entities.trade import Trade
from src.core.interfaces.datasource import ISnapshotStore

logger = logging.getLogger(__name__)

_trades_adapter = TypeAdapter(List[Trade])


class JsonFileSnapshotStore(ISnapshotStore):
    """
    Whole-history JSON array on disk. Writes go to a temp file in the same
    directory and are swapped in with os.replace.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> List[Trade]:
        if not self.path.exists():
            logger.info(f"No snapshot at {self.path}, starting empty")
            return []
        with self.path.open("r", encoding="utf-8") as f:
            raw = json.load(f)
        return _trades_adapter.validate_python(raw)

    def save(self, trades: Sequence[Trade]) -> None:
        payload = [t.to_record() for t in trades]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
