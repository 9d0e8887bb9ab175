# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the SAGE project

"""Durable control-plane state.

Only two things survive a restart: the snapshot version high-water mark,
so published versions keep increasing across processes, and the last
applied scaling decision, so a stale decision cannot be re-applied.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path

from .types import ScalingDecision

logger = logging.getLogger(__name__)


@dataclass
class PersistedState:
    snapshot_version: int = 0
    last_decision: ScalingDecision | None = None
    saved_at: float | None = None


class StateStore:
    """JSON file holding ``PersistedState``, written atomically."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> PersistedState:
        """Load the persisted state; a missing or corrupt file yields defaults."""
        if not self.path.exists():
            return PersistedState()

        try:
            with open(self.path) as f:
                data = json.load(f)
            decision_data = data.get("last_decision")
            state = PersistedState(
                snapshot_version=int(data.get("snapshot_version", 0)),
                last_decision=(
                    ScalingDecision.from_dict(decision_data) if decision_data else None
                ),
                saved_at=data.get("saved_at"),
            )
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.error("Failed to load state from %s: %s", self.path, exc)
            return PersistedState()

        logger.info(
            "Restored state from %s (snapshot_version=%d, last_decision=%s)",
            self.path,
            state.snapshot_version,
            state.last_decision.reason.value if state.last_decision else None,
        )
        return state

    def save(self, snapshot_version: int, last_decision: ScalingDecision | None) -> bool:
        """Persist state. Returns False (and logs) when the write failed."""
        data = {
            "snapshot_version": snapshot_version,
            "last_decision": last_decision.to_dict() if last_decision else None,
            "saved_at": time.time(),
        }
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            logger.error("Failed to save state to %s: %s", self.path, exc)
            return False
        return True
