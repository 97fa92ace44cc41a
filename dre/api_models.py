from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")

KINDS = ("Workload", "Service", "ConfigSet", "VolumeClaim", "VolumePool")

AccessMode = Literal["ReadWriteOnce", "ReadOnlyMany", "ReadWriteMany"]

_UNITS = {"Ki": 1024, "Mi": 1024**2, "Gi": 1024**3, "Ti": 1024**4}


def _non_negative(n: int) -> int:
    if n < 0:
        raise ValueError("storage quantity must be >= 0")
    return n


def parse_storage(value: int | str) -> int:
    """Parse a storage quantity ("512Mi", "1Gi", 2048) into bytes."""
    if isinstance(value, int):
        return _non_negative(value)
    raw = str(value).strip()
    for suffix, mult in _UNITS.items():
        if raw.endswith(suffix):
            return _non_negative(int(raw[: -len(suffix)]) * mult)
    return _non_negative(int(raw))


def validate_name(name: str) -> str:
    if not NAME_RE.match(name):
        raise ValueError(
            "Invalid name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
        )
    return name


class ProbeSpec(BaseModel):
    path: str = "/health"
    initial_delay_s: float = Field(0, ge=0)
    period_s: float = Field(5, gt=0)
    timeout_s: float = Field(2, gt=0, le=60)
    failure_threshold: int = Field(3, ge=1)

    @field_validator("path")
    @classmethod
    def _simple_path(cls, v: str) -> str:
        # Keep it a path (not a full URL) so probes cannot be aimed elsewhere.
        if not v.startswith("/"):
            raise ValueError("probe path must start with '/'.")
        if "://" in v or ".." in v:
            raise ValueError("probe path must be a simple absolute path (no scheme, no '..').")
        return v


class InstanceTemplate(BaseModel):
    image: str = Field(..., min_length=1, description="Opaque image reference produced by CI")
    port: int = Field(..., ge=1, le=65535, description="Container port the instance listens on")
    config_ref: str | None = Field(None, description="Name of the ConfigSet injected as environment")
    config_aliases: dict[str, str] = Field(
        default_factory=dict, description="Workload-local env name -> global config key"
    )
    liveness: ProbeSpec = Field(default_factory=ProbeSpec)
    readiness: ProbeSpec = Field(default_factory=ProbeSpec)
    volume_claim: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)


class WorkloadSpec(BaseModel):
    replicas: int = Field(1, ge=0, le=100)
    surge: int = Field(1, ge=1, le=100)
    template: InstanceTemplate


class ServiceSpec(BaseModel):
    selector: dict[str, str] = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535)
    target_port: int = Field(..., ge=1, le=65535)
    scope: Literal["internal", "external"] = "internal"


class ConfigFragment(BaseModel):
    name: str
    data: dict[str, str] = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v


class ConfigSetSpec(BaseModel):
    fragments: list[ConfigFragment] = Field(default_factory=list)


class VolumeClaimSpec(BaseModel):
    capacity: int
    access_mode: AccessMode = "ReadWriteOnce"

    @field_validator("capacity", mode="before")
    @classmethod
    def _bytes(cls, v: Any) -> int:
        return parse_storage(v)


class VolumePoolSpec(BaseModel):
    capacity: int
    access_mode: AccessMode = "ReadWriteOnce"
    reclaim_policy: Literal["Retain", "Delete"] = "Retain"

    @field_validator("capacity", mode="before")
    @classmethod
    def _bytes(cls, v: Any) -> int:
        return parse_storage(v)


SPEC_MODELS: dict[str, type[BaseModel]] = {
    "Workload": WorkloadSpec,
    "Service": ServiceSpec,
    "ConfigSet": ConfigSetSpec,
    "VolumeClaim": VolumeClaimSpec,
    "VolumePool": VolumePoolSpec,
}


class Document(BaseModel):
    kind: Literal["Workload", "Service", "ConfigSet", "VolumeClaim", "VolumePool"]
    name: str
    spec: dict[str, Any]

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        return validate_name(v)

    def parsed(self) -> BaseModel:
        return SPEC_MODELS[self.kind].model_validate(self.spec)


class CancelResponse(BaseModel):
    workload: str
    state: str
    message: str
