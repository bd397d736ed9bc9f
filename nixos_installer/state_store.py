from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class InstallationState:
    """Run-scoped record; never read back to resume a run."""

    log_path: str
    dry_run: bool = False
    total_steps: int = 0
    step_index: int = 0
    current_step: Optional[str] = None
    completed_steps: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    last_error: Optional[str] = None
    last_command: Optional[str] = None
    outcome: Optional[str] = None
    started_at: str = field(default_factory=lambda: datetime.now().isoformat(timespec="seconds"))
    finished_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"json", "yaml", "yml"}:
        return ext
    # Default to JSON for unknown extensions.
    return "json"


def _yaml():
    try:
        import yaml  # type: ignore
    except ImportError as e:  # pragma: no cover
        raise RuntimeError("YAML run record requested but PyYAML is not installed; use a .json path") from e
    return yaml


def save_state(path: str, state: InstallationState) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    data = state.to_dict()
    if _detect_format(p) in {"yaml", "yml"}:
        p.write_text(_yaml().safe_dump(data, sort_keys=False), encoding="utf-8")
    else:
        p.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    logger.debug("Run record written to %s", p)


def mark_step_completed(state: InstallationState, step_id: str) -> None:
    if step_id not in state.completed_steps:
        state.completed_steps.append(step_id)
