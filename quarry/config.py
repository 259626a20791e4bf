import os
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from quarry.types import MergeStrategy

MergeFunction = Callable[[Any, Any], Any]
MergeRule = Union[MergeStrategy, MergeFunction]


class DatabaseConfig(BaseModel):
    path: str = Field(
        default_factory=lambda: os.environ.get("QUARRY_DATABASE", ":memory:")
    )
    busy_timeout_ms: int = Field(default=5000, ge=0)
    foreign_keys: bool = Field(default=True)
    isolation: Literal["DEFERRED", "IMMEDIATE", "EXCLUSIVE"] = Field(
        default="DEFERRED"
    )


class RetryPolicy(BaseModel):
    attempts: int = Field(default=3, ge=1)
    backoff: Literal["fixed", "exponential"] = Field(default="fixed")
    delay_ms: float = Field(default=100, ge=0)
    # "ignore" turns a terminal failure into the operation's zero-effect result.
    on_error: Literal["raise", "ignore"] = Field(default="raise")


class ExecutionOptions(BaseModel):
    transaction: bool = Field(default=True)
    timeout_ms: Optional[float] = Field(default=None, gt=0)
    retry: Optional[RetryPolicy] = None


class UpsertPlan(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    conflict_target: Optional[List[str]] = None
    merge_strategy: Union[MergeRule, Dict[str, MergeRule]] = Field(
        default=MergeStrategy.REPLACE
    )
    # Extra filter an existing row must satisfy to count as a conflict match.
    where: Optional[Any] = None
    dry_run: bool = Field(default=False)
    returning: bool = Field(default=True)
    batch_size: Optional[int] = Field(default=None, ge=1)
    after_upsert: Optional[Callable[..., Any]] = None


class UpdateUpsert(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    on_conflict: Union[str, List[str]]
    conflict_values: Dict[str, Any] = Field(default_factory=dict)

    @property
    def conflict_columns(self) -> List[str]:
        if isinstance(self.on_conflict, str):
            return [self.on_conflict]
        return list(self.on_conflict)


class Include(BaseModel):
    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True)

    association: str = Field(alias="as")
    where: Optional[Any] = None
    attributes: Optional[List[str]] = None
    include: List[Union[str, "Include"]] = Field(default_factory=list)


Include.model_rebuild()
