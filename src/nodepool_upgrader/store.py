"""Archive of upgrade operations with optional JSON persistence."""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path

import structlog
from pydantic import ValidationError

from nodepool_upgrader.models import OperationError, UpgradeOperation

log = structlog.get_logger()


class OperationStore:
    """Keeps every operation per pool, newest last.

    With a ``state_dir`` each save writes ``<state_dir>/<cluster>/<pool>/<operation_id>.json``
    so history survives restarts.
    """

    def __init__(self, state_dir: Path | None = None) -> None:
        self._state_dir = state_dir
        self._operations: dict[str, dict[str, UpgradeOperation]] = {}
        if state_dir is not None:
            self._load(state_dir)

    def save(self, operation: UpgradeOperation) -> None:
        snapshot = operation.model_copy(deep=True)
        self._operations.setdefault(operation.pool_id, {})[operation.operation_id] = snapshot
        if self._state_dir is None:
            return
        path = self._state_dir / operation.pool_id / f"{operation.operation_id}.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(snapshot.model_dump_json(indent=2))
        os.replace(tmp, path)

    def history(self, pool_id: str) -> list[UpgradeOperation]:
        ops = self._operations.get(pool_id, {}).values()
        return [op.model_copy(deep=True) for op in sorted(ops, key=lambda o: o.started_at)]

    def latest(self, pool_id: str) -> UpgradeOperation | None:
        ops = self.history(pool_id)
        return ops[-1] if ops else None

    def recover_interrupted(self, at: datetime) -> list[UpgradeOperation]:
        """Mark operations persisted in a non-terminal phase as Failed.

        Their node work cannot be resumed safely after a restart, so recovery is
        left to the operator.
        """
        recovered: list[UpgradeOperation] = []
        for ops in self._operations.values():
            for op in list(ops.values()):
                if op.is_terminal:
                    continue
                op.error = OperationError(
                    kind="Interrupted",
                    message=f"Process restarted while the operation was in phase {op.phase}",
                )
                op.transition("Failed", at)
                self.save(op)
                recovered.append(op.model_copy(deep=True))
                log.warning("operation_interrupted", pool=op.pool_id, operation_id=op.operation_id)
        return recovered

    def _load(self, state_dir: Path) -> None:
        if not state_dir.exists():
            return
        for path in sorted(state_dir.glob("*/*/*.json")):
            try:
                op = UpgradeOperation.model_validate_json(path.read_text())
            except ValidationError:
                log.error("operation_file_invalid", path=str(path))
                continue
            self._operations.setdefault(op.pool_id, {})[op.operation_id] = op
        log.info("operation_store_loaded", state_dir=str(state_dir), pools=len(self._operations))
