"""
Request payloads accepted by the SyncService operations

Callers send camelCase keys; snake_case works too.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from commerce_sync.errors import ConfigurationError
from commerce_sync.utils.helpers import parse_datetime


class RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ScheduleSyncJobRequest(RequestModel):
    platform: str
    store_id: str = Field(alias="storeId", min_length=1)
    sync_types: List[str] = Field(alias="syncTypes", min_length=1)
    schedule: Optional[str] = None
    credentials: Dict[str, Any] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)
    exclusive: bool = False
    notification: Optional[Dict[str, Any]] = None
    job_id: Optional[str] = Field(default=None, alias="jobId")

    @field_validator("schedule")
    @classmethod
    def blank_schedule_is_on_demand(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class DateRange(RequestModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @field_validator("start", "end")
    @classmethod
    def as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return parse_datetime(value)


class SyncHistoryParams(RequestModel):
    store_id: Optional[str] = Field(default=None, alias="storeId")
    job_id: Optional[str] = Field(default=None, alias="jobId")
    limit: int = Field(default=50, ge=0)
    offset: int = Field(default=0, ge=0)
    date_range: Optional[DateRange] = Field(default=None, alias="dateRange")


class RollbackRequest(RequestModel):
    job_id: str = Field(alias="jobId")
    rollback_to_snapshot: Optional[str] = Field(default=None, alias="rollbackToSnapshot")
    reason: Optional[str] = None


class StrategySyncRequest(RequestModel):
    """
    Parameters of full_sync / incremental_sync / batch_sync

    Either jobId, or storeId with the data types to sync. platform and
    credentials are only needed when the store has no job to borrow them from.
    """
    job_id: Optional[str] = Field(default=None, alias="jobId")
    store_id: Optional[str] = Field(default=None, alias="storeId")
    platform: Optional[str] = None
    credentials: Dict[str, Any] = Field(default_factory=dict)
    data_type: Optional[str] = Field(default=None, alias="dataType")
    data_types: List[str] = Field(default_factory=list, alias="dataTypes")
    last_sync_at: Optional[datetime] = Field(default=None, alias="lastSyncAt")
    batch_size: Optional[int] = Field(default=None, alias="batchSize", ge=1)
    parallelism: Optional[int] = Field(default=None, alias="parallelization", ge=1)
    total_records: Optional[int] = Field(default=None, alias="totalRecords", ge=0)
    optimization: Dict[str, Any] = Field(default_factory=dict)
    memory_limit: Optional[Union[int, str]] = Field(default=None, alias="memoryLimit")
    adaptive_batching: Optional[bool] = Field(default=None, alias="adaptiveBatching")

    @field_validator("last_sync_at")
    @classmethod
    def as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return parse_datetime(value)

    @property
    def sync_types(self) -> List[str]:
        types = list(self.data_types)
        if self.data_type and self.data_type not in types:
            types.insert(0, self.data_type)
        return types

    def config_overrides(self) -> Dict[str, Any]:
        """Job config keys this request sets"""
        overrides = {}
        if self.batch_size is not None:
            overrides["batch_size"] = self.batch_size
        if self.parallelism is not None:
            overrides["parallelism"] = self.parallelism
        if self.total_records is not None:
            overrides["total_records"] = self.total_records
        memory_limit = self.memory_limit if self.memory_limit is not None else self.optimization.get("memoryLimit")
        if memory_limit is not None:
            overrides["memory_limit"] = memory_limit
            # A memory limit is only useful if batches may shrink
            overrides["adaptive_batching"] = True
        if self.adaptive_batching is not None:
            overrides["adaptive_batching"] = self.adaptive_batching
        return overrides


def parse_request(model, data: Any):
    """
    Validate a request payload

    Raises:
        ConfigurationError: with pydantic's messages
    """
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in e.errors()
        )
        raise ConfigurationError(f"Invalid {model.__name__}: {problems}")
