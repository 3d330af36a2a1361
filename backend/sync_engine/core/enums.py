from __future__ import annotations

from enum import Enum


class Platform(str, Enum):
    SHOPIFY = "SHOPIFY"
    META = "META"

    # 按能力命名的别名，指向同一个成员
    COMMERCE = "SHOPIFY"
    ADS = "META"

    @classmethod
    def parse(cls, value: "str | Platform") -> "Platform":
        if isinstance(value, cls):
            return value
        key = str(value or "").strip().upper()
        try:
            return cls[key]
        except KeyError:
            raise ValueError(f"unknown platform: {value!r}") from None


class JobType(str, Enum):
    HISTORICAL_INIT = "HISTORICAL_INIT"
    HISTORICAL_REBUILD = "HISTORICAL_REBUILD"
    INCREMENTAL = "INCREMENTAL"

    @property
    def is_historical(self) -> bool:
        return self in (JobType.HISTORICAL_INIT, JobType.HISTORICAL_REBUILD)

    @classmethod
    def parse(cls, value: "str | JobType") -> "JobType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            raise ValueError(f"unknown job type: {value!r}") from None


class JobStatus(str, Enum):
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)
