"""
Flag Store

In-memory table of feature flags, their rollout plans and the flag audit
log, with optional JSON persistence.
"""
from typing import Dict, List, Optional
from pathlib import Path
import json

from logger import get_logger
from deployment.models import (
    FeatureFlag,
    FlagAuditEntry,
    RolloutPlan,
    parse_feature_flags,
    parse_rollout_plans,
)

logger = get_logger(__name__)


class FlagStore:
    """
    Pure data holder with mutation primitives

    The store performs no validation and no evaluation; the FeatureFlagEngine
    owns those rules. When ``state_path`` is set, flags and rollout plans
    (including each plan's ``next_step_at``) are written on every ``save()``
    and restored on construction.
    """

    def __init__(self, state_path: Optional[Path] = None, audit_limit: int = 5000):
        self.state_path = Path(state_path) if state_path else None
        self.audit_limit = audit_limit
        self._flags: Dict[str, FeatureFlag] = {}
        self._plans: Dict[str, RolloutPlan] = {}
        self._audit: List[FlagAuditEntry] = []

        if self.state_path:
            self.load()

    # Flags

    def add_flag(self, flag: FeatureFlag):
        self._flags[flag.id] = flag

    def get_flag(self, flag_id: str) -> Optional[FeatureFlag]:
        return self._flags.get(flag_id)

    def has_flag(self, flag_id: str) -> bool:
        return flag_id in self._flags

    def list_flags(self) -> List[FeatureFlag]:
        return list(self._flags.values())

    # Rollout plans

    def set_plan(self, plan: RolloutPlan):
        self._plans[plan.flag_id] = plan

    def get_plan(self, flag_id: str) -> Optional[RolloutPlan]:
        return self._plans.get(flag_id)

    def list_plans(self) -> List[RolloutPlan]:
        return list(self._plans.values())

    # Audit log

    def record_audit(self, entry: FlagAuditEntry):
        self._audit.append(entry)
        if len(self._audit) > self.audit_limit:
            del self._audit[: len(self._audit) - self.audit_limit]

    def audit_log(self, flag_id: Optional[str] = None, limit: Optional[int] = None) -> List[FlagAuditEntry]:
        entries = self._audit
        if flag_id:
            entries = [e for e in entries if e.flag_id == flag_id]
        if limit is not None:
            entries = entries[-limit:]
        return list(entries)

    # Persistence

    def load(self):
        """Load flags and plans from the state file"""
        if not self.state_path or not self.state_path.exists():
            logger.info(f"No flag state found at {self.state_path}")
            return

        try:
            with open(self.state_path, 'r') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Error loading flag state from {self.state_path}: {e}")
            return

        if not isinstance(data, dict):
            logger.error(f"Ignoring flag state at {self.state_path}: expected a JSON object")
            return

        # Invalid records are skipped one by one so the rest still restores
        for flag in parse_feature_flags(data.get("flags", [])):
            self._flags[flag.id] = flag

        for plan in parse_rollout_plans(data.get("plans", [])):
            self._plans[plan.flag_id] = plan

        logger.info(
            f"Loaded {len(self._flags)} flags and {len(self._plans)} rollout plans "
            f"from {self.state_path}"
        )

    def save(self):
        """Write flags and plans to the state file"""
        if not self.state_path:
            return

        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)

            data = {
                "flags": [flag.to_dict() for flag in self._flags.values()],
                "plans": [plan.to_dict() for plan in self._plans.values()],
            }

            tmp_path = self.state_path.with_suffix(self.state_path.suffix + ".tmp")
            with open(tmp_path, 'w') as f:
                json.dump(data, f, indent=2)
            tmp_path.replace(self.state_path)

        except OSError as e:
            logger.error(f"Error saving flag state: {e}")
