"""
Flat-file snapshot of the latest full valuation sweep.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence, Union

from src.data_collector.config import KrxValuationConfig, krx_config
from src.data_collector.krx_valuation.data_models import ValuationResult
from src.utils.logger import get_logger

logger = get_logger(__name__)


class ResultSnapshotStore:
    """JSON list of ValuationResult records, replaced atomically on each save."""

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        config: Optional[KrxValuationConfig] = None,
    ) -> None:
        self.config = config or krx_config
        self.path = Path(path or self.config.SNAPSHOT_PATH)

    def save(self, results: Sequence[ValuationResult]) -> Path:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [r.model_dump(mode="json") for r in results]
        fd, tmp_name = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self.path)
        except Exception:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise
        logger.info(f"Saved {len(payload)} valuation results to {self.path}")
        return self.path

    def load(self) -> List[ValuationResult]:
        if not self.path.exists():
            logger.warning(f"No valuation snapshot at {self.path}")
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            records = json.load(f)
        return [ValuationResult.model_validate(r) for r in records]

    def top_positive(self, n: Optional[int] = None) -> List[ValuationResult]:
        """Entries with a positive safety margin, in stored order, first n."""
        limit = self.config.DEFAULT_TOP_N if n is None else n
        positive = [r for r in self.load() if r.safety_margin is not None and r.safety_margin > 0]
        return positive[:limit]
