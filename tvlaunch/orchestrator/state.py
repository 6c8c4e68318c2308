from __future__ import annotations
from dataclasses import dataclass, asdict, field
from typing import Literal, Optional, Dict, Any

Phase = Literal["awaiting_off", "awaiting_on"]

@dataclass
class TriggerStats:
    fired: int = 0
    failed: int = 0
    last_ok: Optional[bool] = None
    last_at: Optional[str] = None

@dataclass
class DetectorState:
    # Last probe outcome; None until the startup probe has run.
    alive: Optional[bool] = None
    phase: Optional[Phase] = None
    changed_at: Optional[str] = None
    last_probe_error: Optional[str] = None
    trigger: TriggerStats = field(default_factory=TriggerStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alive": self.alive,
            "phase": self.phase,
            "changed_at": self.changed_at,
            "last_probe_error": self.last_probe_error,
            "trigger": asdict(self.trigger),
        }
