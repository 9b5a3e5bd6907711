#
#  Copyright (C) 2017-2025 Dremio Corporation
#
#  Licensed under the Apache License, Version 2.0 (the "License");
#  you may not use this file except in compliance with the License.
#  You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
#  Unless required by applicable law or agreed to in writing, software
#  distributed under the License is distributed on an "AS IS" BASIS,
#  WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
#  See the License for the specific language governing permissions and
#  limitations under the License.
#
from pydantic import (
    Field,
    AfterValidator,
    BaseModel,
    ConfigDict,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import (
    Optional,
    Annotated,
    Self,
    List,
    Dict,
    Any,
)
from pathlib import Path
from yaml import safe_load, safe_dump
from contextvars import ContextVar
from os import environ


def _clamp(lo: float, hi: float):
    def _apply(v):
        return v if v is None else min(max(v, lo), hi)

    return _apply


def _resolve_path(p: Optional[Path]) -> Optional[Path]:
    return Path(p).expanduser() if p is not None else None


class Read(BaseModel):
    """Limits applied while reading stored-procedure result sets"""

    max_rows_per_table: Annotated[int, AfterValidator(_clamp(1, 1_000_000))] = 20000
    max_rows_summary: Annotated[int, AfterValidator(_clamp(1, 10_000))] = 500
    max_schema_rows: Annotated[int, AfterValidator(_clamp(1, 1_000_000))] = 50000
    max_tables: Annotated[int, AfterValidator(_clamp(1, 100))] = 20
    model_config = ConfigDict(validate_assignment=True)


class Delivery(BaseModel):
    """Bounds for tables sent to the client as display previews"""

    max_columns: Annotated[int, AfterValidator(_clamp(1, 500))] = 100
    max_display_rows: Annotated[int, AfterValidator(_clamp(1, 100_000))] = 2000
    preview_rows: Annotated[int, AfterValidator(_clamp(0, 1000))] = 100
    model_config = ConfigDict(validate_assignment=True)


class Analytics(BaseModel):
    max_groups: Annotated[int, AfterValidator(_clamp(1, 5000))] = 200
    max_result_rows: Annotated[int, AfterValidator(_clamp(1, 5000))] = 500
    max_join_rows: Annotated[int, AfterValidator(_clamp(1, 1_000_000))] = 50000
    max_join_matches_per_left: Annotated[int, AfterValidator(_clamp(1, 10_000))] = 50
    wide_table_columns: Annotated[int, AfterValidator(_clamp(1, 500))] = 20
    preview_rows: Annotated[int, AfterValidator(_clamp(0, 1000))] = 100
    timeout_seconds: Optional[float] = Field(
        default=30.0, description="Wall-clock budget for one pipeline run"
    )
    budget_check_rows: Annotated[int, AfterValidator(_clamp(1, 1_000_000))] = 1024
    result_cache_ttl_seconds: Annotated[int, AfterValidator(_clamp(0, 86400))] = Field(
        default=120, description="How long pipeline results are reused, 0 disables"
    )
    result_cache_max_entries: Annotated[int, AfterValidator(_clamp(1, 10_000))] = 256
    model_config = ConfigDict(validate_assignment=True)


class Datasets(BaseModel):
    ttl_seconds: Annotated[int, AfterValidator(_clamp(1, 86400))] = 600
    sliding_expiration: bool = False
    shards: Annotated[int, AfterValidator(_clamp(1, 256))] = 16
    max_rows: Annotated[int, AfterValidator(_clamp(1, 100_000))] = 20000
    max_columns: Annotated[int, AfterValidator(_clamp(1, 100))] = 40
    preview_rows: Annotated[int, AfterValidator(_clamp(0, 200))] = 100
    eviction_interval_seconds: Optional[float] = Field(
        default=60.0, description="How often expired datasets are purged"
    )
    model_config = ConfigDict(validate_assignment=True)


class Compaction(BaseModel):
    max_depth: Annotated[int, AfterValidator(_clamp(1, 64))] = 6
    max_array_elements: Annotated[int, AfterValidator(_clamp(1, 10_000))] = 20
    max_string_length: Annotated[int, AfterValidator(_clamp(16, 100_000))] = 500
    max_bytes: Annotated[int, AfterValidator(_clamp(1000, 200_000))] = 12000
    model_config = ConfigDict(validate_assignment=True)


class Governance(BaseModel):
    default_schema: str = "dbo"
    procedure_prefix: str = Field(
        default="dbo.ai_sp_",
        description="Every executable procedure name must start with this prefix",
    )
    param_cache_ttl_seconds: Annotated[int, AfterValidator(_clamp(0, 86400))] = 600
    command_timeout_seconds: Annotated[int, AfterValidator(_clamp(5, 1800))] = 60
    retry_on_empty: bool = Field(
        default=True,
        description="Retry once with original values when normalization changed "
        "a parameter and the result looks empty",
    )
    normalizers: Optional[Dict[str, str]] = Field(
        default_factory=lambda: {"@Season": "season"},
        description="Parameter name to value normalizer",
    )
    model_config = ConfigDict(validate_assignment=True)

    @field_validator("procedure_prefix")
    @classmethod
    def _check_prefix(cls, v: str) -> str:
        if "." not in v:
            raise ValueError("procedure_prefix must be schema qualified, e.g. dbo.sp_")
        return v.strip()


class Catalog(BaseModel):
    file: Annotated[Optional[Path], AfterValidator(_resolve_path)] = None
    model_config = ConfigDict(validate_assignment=True)


class Executor(BaseModel):
    source_id: str = "fixtures"
    fixtures_dir: Annotated[Optional[Path], AfterValidator(_resolve_path)] = None
    model_config = ConfigDict(validate_assignment=True)


class Settings(BaseSettings):
    read: Optional[Read] = Field(default_factory=Read)
    delivery: Optional[Delivery] = Field(default_factory=Delivery)
    analytics: Optional[Analytics] = Field(default_factory=Analytics)
    datasets: Optional[Datasets] = Field(default_factory=Datasets)
    compaction: Optional[Compaction] = Field(default_factory=Compaction)
    governance: Optional[Governance] = Field(default_factory=Governance)
    catalog: Optional[Catalog] = Field(default_factory=Catalog)
    executor: Optional[Executor] = Field(default_factory=Executor)
    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        env_prefix="GOVQUERY_",
        extra="ignore",
        use_enum_values=True,
    )

    def with_overrides(self, overrides: Dict[str, Any]) -> Self:
        """Apply dotted ``section.field`` overrides; unknown names are ignored."""

        def set_values(aparts: List[str], value: Any, obj: Any):
            if len(aparts) == 1 and hasattr(obj, aparts[0]):
                setattr(obj, aparts[0], value)
            elif hasattr(obj, aparts[0]):
                section = getattr(obj, aparts[0])
                set_values(aparts[1:], value, section)
                # reassign so the section counts as set when written out
                setattr(obj, aparts[0], section)

        for aparts, value in [
            (attr.split("."), value)
            for attr, value in overrides.items()
            if value is not None
        ]:
            set_values(aparts, value, self)

        return self


_settings: ContextVar[Settings] = ContextVar("settings", default=None)


# the default config is $XDG_CONFIG_HOME/govquery/config.yaml
def default_config() -> Path:
    return (
        Path(environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
        / "govquery"
        / "config.yaml"
    )


# loads the given config file, creating it empty if missing; a file that fails
# validation leaves the current settings in place
def configure(cfg: Optional[Path | str] = None) -> ContextVar[Settings]:
    cfg = Path(cfg) if cfg is not None else default_config()
    if not cfg.exists():
        cfg.parent.mkdir(parents=True, exist_ok=True)
        cfg.touch()

    with cfg.open() as f:
        s = safe_load(f)
    _settings.set(Settings.model_validate(s if s else {}))
    return _settings


# Get the current settings instance if one has been configured. If not try
# to configure it using the default config file. If that fails, create a new
# empty settings instance.
def instance() -> Settings | None:
    global _settings
    if not isinstance(_settings.get(), Settings):
        try:
            configure()  # use default config, if exists
        except (FileNotFoundError, PermissionError):
            # no default config, create a new default one
            _settings.set(Settings())
    return _settings.get()


def write_settings(
    cfg: Path = None, inst: Settings = None, dry_run: bool = False
) -> str | None:
    if cfg is None:
        cfg = default_config()

    if not isinstance(inst, Settings):
        inst = instance()

    d = inst.model_dump(
        exclude_none=True, mode="json", exclude_unset=True, by_alias=True
    )
    if dry_run:
        return safe_dump(d)

    if not cfg.exists() or not cfg.parent.exists():
        cfg.parent.mkdir(parents=True, exist_ok=True)

    with cfg.open("w") as f:
        safe_dump(d, f)
