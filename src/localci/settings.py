from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

# Host variables a job may see. Everything else from os.environ stays out.
DEFAULT_PASSTHROUGH = ("PATH", "HOME", "LANG", "TMPDIR")

VARIABLE_POLICIES = ("warn", "fail")


def default_concurrency() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass(frozen=True)
class Settings:
    """Runtime defaults, overridable from the environment and then the CLI."""
    concurrency: int = field(default_factory=default_concurrency)
    variable_policy: str = "warn"
    passthrough_env: Tuple[str, ...] = DEFAULT_PASSTHROUGH
    workdir: Optional[str] = None  # parent dir for job sandboxes (None -> system temp)
    docker: str = "docker"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        concurrency = default_concurrency()
        raw = env.get("LOCALCI_CONCURRENCY")
        if raw:
            try:
                concurrency = max(1, int(raw))
            except ValueError:
                raise ValueError(f"LOCALCI_CONCURRENCY must be an integer, got {raw!r}")

        policy = env.get("LOCALCI_VARIABLE_POLICY", "warn").strip().lower()
        if policy not in VARIABLE_POLICIES:
            raise ValueError(
                f"LOCALCI_VARIABLE_POLICY must be one of {VARIABLE_POLICIES}, got {policy!r}"
            )

        extra = [n.strip() for n in env.get("LOCALCI_PASSTHROUGH_ENV", "").split(",") if n.strip()]
        passthrough = tuple(dict.fromkeys([*DEFAULT_PASSTHROUGH, *extra]))

        return cls(
            concurrency=concurrency,
            variable_policy=policy,
            passthrough_env=passthrough,
            workdir=env.get("LOCALCI_WORKDIR") or None,
            docker=env.get("LOCALCI_DOCKER", "docker"),
        )
