# schema.py
# Shape of a raw pipeline definition, after format parsing (YAML/JSON/Python).
from __future__ import annotations

import re
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

When = Literal["always", "on_success", "on_failure", "manual", "never"]

MAX_RETRIES = 10

_DURATION_UNITS = {
    "s": 1, "sec": 1, "secs": 1, "second": 1, "seconds": 1,
    "m": 60, "min": 60, "mins": 60, "minute": 60, "minutes": 60,
    "h": 3600, "hr": 3600, "hrs": 3600, "hour": 3600, "hours": 3600,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)")


def parse_duration(value: Union[int, float, str]) -> float:
    """
    Parse a timeout into seconds.

    Accepts plain numbers (seconds) or strings like "90s", "1h 30m",
    "10 minutes". Raises ValueError for anything else.
    """
    if isinstance(value, bool):
        raise ValueError("duration must be a number or a string like '1h 30m'")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip().lower()
        if re.fullmatch(r"\d+(?:\.\d+)?", text):
            seconds = float(text)
        else:
            pos = 0
            seconds = 0.0
            for m in _DURATION_PART.finditer(text):
                if text[pos:m.start()].strip():
                    raise ValueError(f"invalid duration: {value!r}")
                unit = _DURATION_UNITS.get(m.group(2))
                if unit is None:
                    raise ValueError(f"unknown duration unit {m.group(2)!r} in {value!r}")
                seconds += float(m.group(1)) * unit
                pos = m.end()
            if pos == 0 or text[pos:].strip():
                raise ValueError(f"invalid duration: {value!r}")
    if seconds <= 0:
        raise ValueError(f"duration must be positive, got {value!r}")
    return seconds


def _stringify(values: Any) -> Any:
    # YAML hands us ints/bools for things like PORT: 8080; variables are strings.
    if isinstance(values, dict):
        out = {}
        for k, v in values.items():
            if v is None:
                v = ""
            elif isinstance(v, bool):
                v = "true" if v else "false"
            elif isinstance(v, (int, float)):
                v = str(v)
            out[str(k)] = v
        return out
    return values


class StageSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    variables: Dict[str, str] = Field(default_factory=dict)

    @field_validator("variables", mode="before")
    @classmethod
    def _variables(cls, v: Any) -> Any:
        return _stringify(v)


class JobSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None  # set by the DSL; must match the mapping key
    stage: Optional[str] = None
    script: List[str] = Field(min_length=1)
    needs: Optional[List[str]] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    when: When = "on_success"
    artifacts: List[str] = Field(default_factory=list)
    allow_failure: bool = False
    retries: int = Field(default=0, ge=0, le=MAX_RETRIES)
    timeout: Optional[float] = None
    image: Optional[str] = None
    dependencies: Optional[List[str]] = None

    @field_validator("script", mode="before")
    @classmethod
    def _script_list(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("artifacts", mode="before")
    @classmethod
    def _artifact_paths(cls, v: Any) -> Any:
        # allow {"paths": [...]} as well as a bare list
        if isinstance(v, dict):
            return v.get("paths", [])
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("needs", "dependencies", mode="before")
    @classmethod
    def _name_list(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [v]
        if isinstance(v, (set, frozenset, tuple)):
            return list(v)
        return v

    @field_validator("variables", mode="before")
    @classmethod
    def _variables(cls, v: Any) -> Any:
        return _stringify(v)

    @field_validator("timeout", mode="before")
    @classmethod
    def _timeout(cls, v: Any) -> Any:
        if v is None:
            return None
        return parse_duration(v)


class PostSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    always: List[str] = Field(default_factory=list)
    success: List[str] = Field(default_factory=list)
    failure: List[str] = Field(default_factory=list)
    unstable: List[str] = Field(default_factory=list)


class PipelineSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    stages: Optional[List[StageSpec]] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    jobs: Dict[str, JobSpec] = Field(default_factory=dict)
    post: PostSpec = Field(default_factory=PostSpec)

    @field_validator("stages", mode="before")
    @classmethod
    def _stage_names(cls, v: Any) -> Any:
        # "build" is shorthand for {"name": "build"}
        if isinstance(v, list):
            return [{"name": s} if isinstance(s, str) else s for s in v]
        return v

    @field_validator("variables", mode="before")
    @classmethod
    def _variables(cls, v: Any) -> Any:
        return _stringify(v)
