"""
Catalog Governor Component - Allow-List and Parameter Contract.

This module decides what may execute and with which arguments. A stored
procedure runs only when its name passes the identifier rule and the
catalog marks it enabled, read-only and atomic-compatible. Parameters are
checked against the catalog allow-list before any database call is made.
"""

import json
import re
import threading
import time
from dataclasses import dataclass, field
from typing import (
    Any,
    Awaitable,
    Callable,
    Iterable,
    Mapping,
    Optional,
    Protocol,
)

import structlog
from pydantic import TypeAdapter

from govquery.analytics.classifier import FallbackHint
from govquery.analytics.errors import (
    CatalogNotAllowed,
    InvalidParameters,
    MissingParamsContract,
)
from govquery.analytics.tabular import RawResultSet, ReadResult

logger = structlog.get_logger(__name__)

PARAM_SIGIL = "@"
_IDENTIFIER = re.compile(r"^[A-Za-z0-9_]+\.[A-Za-z0-9_]+$")
_BOOL = TypeAdapter(bool)


def _flag(raw: Mapping[str, Any], key: str, default: bool) -> bool:
    """Read a catalog flag stored as a bool, 0/1 or text such as "false"."""
    value = raw.get(key)
    if value is None or value == "":
        return default
    return _BOOL.validate_python(value)


def canonical_param_name(name: str) -> str:
    name = str(name).strip()
    if not name:
        return name
    return name if name.startswith(PARAM_SIGIL) else f"{PARAM_SIGIL}{name}"


@dataclass(frozen=True)
class ParamSpec:
    name: str
    sql_type: Optional[str] = None
    required: bool = False
    description: Optional[str] = None
    default: Any = None
    has_default: bool = False
    example: Any = None

    def to_dict(self) -> dict[str, Any]:
        d = {
            "name": self.name,
            "sqlType": self.sql_type,
            "required": self.required,
            "description": self.description,
            "example": self.example,
        }
        if self.has_default:
            d["default"] = self.default
        return {k: v for k, v in d.items() if v is not None}


def parse_param_specs(raw: Any) -> tuple[ParamSpec, ...]:
    """
    Parse a catalog parameter spec in any of its accepted shapes.

    Accepted shapes (optionally JSON-encoded):
    - ``[{"name": "@Season", "sqlType": "varchar", "default": ...}, ...]``
    - ``{"params": [...]}`` or ``{"allowedParams": [...]}``
    - ``{"names": ["@Season", ...]}`` or a plain list of names
    """
    if raw is None or raw == "":
        return ()
    if isinstance(raw, str):
        raw = json.loads(raw)
    if isinstance(raw, Mapping):
        if "names" in raw:
            raw = raw["names"]
        else:
            raw = raw.get("params", raw.get("allowedParams", []))

    specs = []
    seen = set()
    for item in raw or []:
        if isinstance(item, str):
            spec = ParamSpec(name=canonical_param_name(item))
        elif isinstance(item, Mapping):
            name = item.get("name") or item.get("param") or item.get("key")
            if not name:
                continue
            spec = ParamSpec(
                name=canonical_param_name(name),
                sql_type=item.get("sqlType") or item.get("type"),
                required=_flag(item, "required", False),
                description=item.get("description_en") or item.get("description"),
                default=item.get("default"),
                has_default="default" in item and item.get("default") is not None,
                example=item.get("example"),
            )
        else:
            continue
        if spec.name.lower() in seen:
            continue
        seen.add(spec.name.lower())
        specs.append(spec)
    return tuple(specs)


@dataclass(frozen=True)
class CatalogEntry:
    """Catalog registration for one stored procedure."""

    procedure_name: str
    is_enabled: bool = True
    is_read_only: bool = True
    is_atomic_compatible: bool = True
    domain: Optional[str] = None
    entity: Optional[str] = None
    intent: Optional[str] = None
    tags: tuple[str, ...] = ()
    params: tuple[ParamSpec, ...] = ()
    result_set_hints: Mapping[int, FallbackHint] = field(default_factory=dict)

    @property
    def allowed_params(self) -> frozenset[str]:
        return frozenset(p.name for p in self.params)

    @property
    def param_defaults(self) -> dict[str, Any]:
        return {p.name: p.default for p in self.params if p.has_default}

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "CatalogEntry":
        tags = raw.get("tags") or ()
        if isinstance(tags, str):
            tags = [t for t in re.split(r"[,;]", tags)]
        hints = {
            int(index): FallbackHint.from_dict(int(index), hint)
            for index, hint in (raw.get("resultSetHints") or {}).items()
        }
        return cls(
            procedure_name=raw.get("procedureName") or raw["spName"],
            is_enabled=_flag(raw, "isEnabled", True),
            is_read_only=_flag(raw, "isReadOnly", True),
            is_atomic_compatible=_flag(raw, "isAtomicCompatible", True),
            domain=raw.get("domain"),
            entity=raw.get("entity"),
            intent=raw.get("intent"),
            tags=tuple(t.strip() for t in tags if t and t.strip()),
            params=parse_param_specs(raw.get("params", raw.get("paramsJson"))),
            result_set_hints=hints,
        )


@dataclass(frozen=True)
class CatalogSearchHit:
    entry: CatalogEntry
    score: float


class CatalogRepository(Protocol):
    """Source of catalog entries, refreshed out of band."""

    async def get(self, procedure_name: str) -> Optional[CatalogEntry]: ...

    async def search(self, query: str, top_k: int) -> list[CatalogSearchHit]: ...


class ProcedureExecutor(Protocol):
    """Runs a stored procedure and returns its ordered result sets."""

    source_id: str

    async def execute(
        self,
        procedure_name: str,
        params: Mapping[str, Any],
        timeout_seconds: float,
    ) -> list[RawResultSet]: ...

    async def describe_parameters(
        self, procedure_name: str
    ) -> Optional[Iterable[str]]: ...


class ParameterNameCache:
    """
    TTL cache of parameter names the data source reports for a procedure.

    Keyed by (source id, procedure) so several backing databases can share
    one cache. The clock is injectable for tests.
    """

    def __init__(
        self, ttl_seconds: float = 600, clock: Callable[[], float] = time.monotonic
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[tuple[str, str], tuple[float, Optional[frozenset[str]]]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, source_id: str, procedure: str) -> tuple[bool, Optional[frozenset[str]]]:
        key = (source_id, procedure.lower())
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry[0] <= self.clock():
                self._entries.pop(key, None)
                self.misses += 1
                return False, None
            self.hits += 1
            return True, entry[1]

    def put(
        self, source_id: str, procedure: str, names: Optional[Iterable[str]]
    ) -> Optional[frozenset[str]]:
        value = (
            frozenset(canonical_param_name(n) for n in names)
            if names is not None
            else None
        )
        with self._lock:
            self._entries[(source_id, procedure.lower())] = (
                self.clock() + self.ttl_seconds,
                value,
            )
        return value

    async def get_or_load(
        self,
        source_id: str,
        procedure: str,
        loader: Callable[[], Awaitable[Optional[Iterable[str]]]],
    ) -> Optional[frozenset[str]]:
        found, names = self.get(source_id, procedure)
        if found:
            return names
        return self.put(source_id, procedure, await loader())


_SEASON = re.compile(
    r"(?<!\d)(?P<y1>\d{2}|\d{4})\s*[/\-]\s*(?P<y2>\d{2}|\d{4})(?!\d)"
)


def _expand_year(text: str) -> int:
    year = int(text)
    if len(text) == 4:
        return year
    return 2000 + year if year <= 50 else 1900 + year


def normalize_season(value: Any) -> Any:
    """Rewrite short season forms ("24/25", "2024-25") as "2024/2025"."""
    if not isinstance(value, str):
        return value
    m = _SEASON.fullmatch(value.strip())
    if m is None:
        return value
    y1 = _expand_year(m["y1"])
    y2 = _expand_year(m["y2"])
    if y2 < y1 and y1 - y2 >= 50:
        y2 += 100
    return f"{y1:04d}/{y2:04d}"


ValueNormalizer = Callable[[Any], Any]

NORMALIZERS: dict[str, ValueNormalizer] = {"season": normalize_season}


def resolve_normalizers(config: Optional[Mapping[str, str]]) -> dict[str, ValueNormalizer]:
    """Map canonical parameter names to normalizer callables by registered name."""
    resolved = {}
    for param, name in (config or {}).items():
        if name not in NORMALIZERS:
            raise ValueError(
                f"Unknown value normalizer '{name}' for {param}; "
                f"known: {', '.join(sorted(NORMALIZERS))}"
            )
        resolved[canonical_param_name(param).lower()] = NORMALIZERS[name]
    return resolved


@dataclass
class ContractResult:
    params: dict[str, Any]
    warnings: list[str] = field(default_factory=list)
    soft_mode: bool = False


@dataclass
class NormalizationResult:
    params: dict[str, Any]
    originals: dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return bool(self.originals)

    def restored(self) -> dict[str, Any]:
        return {**self.params, **self.originals}


def looks_empty(read: ReadResult) -> bool:
    """True when there is no positive summary count and no non-empty data table."""
    if read.summary is not None and read.summary.rows:
        i = read.summary.column_index("totalCount")
        if i is not None:
            try:
                if int(read.summary.rows[0][i] or 0) > 0:
                    return False
            except (TypeError, ValueError):
                pass
    return not any(t.data.rows for t in read.tables)


@dataclass(frozen=True)
class RetryOnEmptyPolicy:
    """Single bounded retry with original values after a normalization rewrite."""

    enabled: bool = True

    def should_retry(self, normalization: NormalizationResult, read: ReadResult) -> bool:
        return self.enabled and normalization.changed and looks_empty(read)


class CatalogGovernor:
    """
    Governor for stored-procedure execution.

    This component:
    1. Validates procedure identifiers against a fixed pattern and prefix
    2. Authorizes procedures against the catalog
    3. Enforces the parameter allow-list and merges defaults
    4. Drops unknown names using source metadata when no allow-list exists
    5. Applies configured value normalizers
    """

    def __init__(
        self,
        repository: CatalogRepository,
        default_schema: str = "dbo",
        procedure_prefix: str = "dbo.ai_sp_",
        normalizers: Optional[Mapping[str, ValueNormalizer]] = None,
        param_cache: Optional[ParameterNameCache] = None,
        retry_policy: Optional[RetryOnEmptyPolicy] = None,
    ):
        """
        Initialize the Catalog Governor.

        Args:
            repository: Catalog repository to look entries up in
            default_schema: Schema prepended to unqualified names
            procedure_prefix: Required schema-qualified name prefix
            normalizers: Value normalizers keyed by canonical parameter name
            param_cache: Cache for source parameter metadata
            retry_policy: Retry-on-empty policy for normalized values
        """
        self.repository = repository
        self.default_schema = default_schema
        self.procedure_prefix = procedure_prefix
        self.normalizers = {
            canonical_param_name(k).lower(): v for k, v in (normalizers or {}).items()
        }
        self.param_cache = param_cache or ParameterNameCache()
        self.retry_policy = retry_policy or RetryOnEmptyPolicy()

    def normalize_procedure_name(self, name: str) -> str:
        name = (name or "").strip()
        if name and "." not in name:
            name = f"{self.default_schema}.{name}"
        if not _IDENTIFIER.match(name):
            raise CatalogNotAllowed(
                f"'{name}' is not a valid procedure identifier.",
                {"procedureName": name, "reason": "invalid_identifier"},
            )
        if not name.lower().startswith(self.procedure_prefix.lower()):
            raise CatalogNotAllowed(
                f"'{name}' does not start with the required prefix "
                f"'{self.procedure_prefix}'.",
                {"procedureName": name, "reason": "prefix_mismatch"},
            )
        return name

    async def authorize(self, procedure_name: str) -> CatalogEntry:
        """
        Authorize a procedure for execution.

        Args:
            procedure_name: Requested procedure, optionally schema-qualified

        Returns:
            The catalog entry

        Raises:
            CatalogNotAllowed: If the name is invalid or the entry is unknown,
                disabled, not read-only, or not atomic-compatible
        """
        name = self.normalize_procedure_name(procedure_name)
        entry = await self.repository.get(name)

        reason = None
        if entry is None:
            reason = "not_registered"
        elif not entry.is_enabled:
            reason = "disabled"
        elif not entry.is_read_only:
            reason = "not_read_only"
        elif not entry.is_atomic_compatible:
            reason = "not_atomic_compatible"

        if reason is not None:
            logger.warning("catalog_rejected", procedure=name, reason=reason)
            raise CatalogNotAllowed(
                f"Stored procedure '{name}' is not allowed ({reason}).",
                {
                    "procedureName": name,
                    "reason": reason,
                    "hint": "Register the procedure in the catalog as enabled, "
                    "read-only and atomic-compatible, or use catalog.search.",
                },
            )

        logger.info("catalog_authorized", procedure=name)
        return entry

    def apply_contract(
        self, entry: CatalogEntry, provided: Mapping[str, Any]
    ) -> ContractResult:
        """
        Apply the catalog parameter contract.

        Args:
            entry: Authorized catalog entry
            provided: Caller-supplied parameters

        Returns:
            ContractResult with canonical names and merged defaults

        Raises:
            InvalidParameters: If any name is outside a non-empty allow-list
            MissingParamsContract: If a required parameter is still absent
        """
        canonical = {}
        for name, value in (provided or {}).items():
            key = canonical_param_name(name)
            if key:
                canonical[key] = value

        if not entry.params:
            return ContractResult(
                params=canonical,
                warnings=[
                    f"No parameter allow-list registered for {entry.procedure_name}; "
                    "unknown parameters are dropped using data source metadata."
                ],
                soft_mode=True,
            )

        by_lower = {p.name.lower(): p for p in entry.params}
        unknown = [k for k in canonical if k.lower() not in by_lower]
        if unknown:
            raise InvalidParameters(
                f"Parameters not allowed for {entry.procedure_name}: "
                f"{', '.join(unknown)}.",
                {
                    "procedureName": entry.procedure_name,
                    "expectedParams": [p.name for p in entry.params],
                    "receivedParams": list((provided or {}).keys()),
                    "unknownParams": unknown,
                },
            )

        accepted = {by_lower[k.lower()].name: v for k, v in canonical.items()}
        for spec in entry.params:
            if spec.name not in accepted and spec.has_default:
                accepted[spec.name] = spec.default

        missing = [p.name for p in entry.params if p.required and p.name not in accepted]
        if missing:
            raise MissingParamsContract(
                f"Required parameters missing for {entry.procedure_name}: "
                f"{', '.join(missing)}.",
                {
                    "procedureName": entry.procedure_name,
                    "expectedParams": [p.name for p in entry.params],
                    "missingParams": missing,
                },
            )
        return ContractResult(params=accepted)

    async def reconcile_with_source(
        self,
        executor: ProcedureExecutor,
        procedure_name: str,
        params: Mapping[str, Any],
    ) -> tuple[dict[str, Any], list[str]]:
        """Drop parameters the data source does not declare (soft mode only)."""
        known = await self.param_cache.get_or_load(
            executor.source_id,
            procedure_name,
            lambda: executor.describe_parameters(procedure_name),
        )
        if known is None:
            return dict(params), []

        lookup = {k.lower(): k for k in known}
        kept = {}
        dropped = []
        for name, value in params.items():
            if name.lower() in lookup:
                kept[lookup[name.lower()]] = value
            else:
                dropped.append(name)

        warnings = []
        if dropped:
            logger.info("params_dropped", procedure=procedure_name, dropped=dropped)
            warnings.append(
                f"Dropped parameters unknown to {procedure_name}: {', '.join(dropped)}."
            )
        return kept, warnings

    def normalize_values(self, params: Mapping[str, Any]) -> NormalizationResult:
        out = dict(params)
        originals = {}
        for name, value in params.items():
            normalizer = self.normalizers.get(name.lower())
            if normalizer is None:
                continue
            normalized = normalizer(value)
            if normalized != value:
                out[name] = normalized
                originals[name] = value
        if originals:
            logger.info("param_values_normalized", params=list(originals))
        return NormalizationResult(params=out, originals=originals)
