"""Policy resolver — loads runtime_policy.json and exposes every runtime
decision as a typed method call.

No magic. No defaults. If a value is missing from the config, it fails loud.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class AssignmentPolicy:
    """Resolved policy for testing-team assignment."""
    load_cap: int
    testers_per_project: int
    min_recommended_teams: int


class PolicyResolver:
    """Loads and resolves all runtime policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        cap = resolver.assignment_policy().load_cap
        schemes = resolver.allowed_url_schemes()
    """

    def __init__(self, policy: dict[str, Any]) -> None:
        self._policy = policy
        self._validate()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        return cls(_load_json(config_dir / "runtime_policy.json"))

    def _validate(self) -> None:
        if "version" not in self._policy:
            raise ValueError("runtime_policy.json missing version")
        policy = self.assignment_policy()
        if policy.load_cap < 1:
            raise ValueError(f"load_cap must be >= 1, got {policy.load_cap}")
        # The selector picks a first and a second team; nothing else.
        if policy.testers_per_project != 2:
            raise ValueError(
                f"testers_per_project must be 2, got {policy.testers_per_project}"
            )

    @property
    def version(self) -> str:
        return str(self._policy["version"])

    # ------------------------------------------------------------------
    # Assignment
    # ------------------------------------------------------------------

    def assignment_policy(self) -> AssignmentPolicy:
        a = self._policy["assignment"]
        return AssignmentPolicy(
            load_cap=a["load_cap"],
            testers_per_project=a["testers_per_project"],
            min_recommended_teams=a["min_recommended_teams"],
        )

    # ------------------------------------------------------------------
    # Link reports
    # ------------------------------------------------------------------

    def allowed_url_schemes(self) -> set[str]:
        return set(self._policy["link_reports"]["allowed_url_schemes"])

    def max_description_length(self) -> int:
        return self._policy["link_reports"]["max_description_length"]

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def faculty_contacts(self) -> dict[str, str]:
        """Return subgroup name → faculty e-mail."""
        return dict(self._policy["notifications"]["faculty_contacts"])


def _load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file or raise with clear path."""
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
