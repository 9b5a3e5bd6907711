"""
Governed Query Execution and Analytics Components.

This package contains the core components for governed execution:
- Tabular: RS0 schema parsing and typed result tables
- Classifier: Engine/display routing for every data table
- Catalog: Procedure authorization and parameter contracts
- Datasets: Leased in-memory engine tables
- Pipeline: Analytics DSL steps and static validation
- Engine: Pipeline execution over datasets
- Join: Bounded hash joins between datasets
- Compactor: Bounding of everything sent to the model
- Orchestrator: The catalog.search, query.execute and analytics.run operations
"""

from .tabular import TabularReader, TabularType, TabularData, ReadResult
from .classifier import ResultSetClassifier, RoutingDecision
from .catalog import CatalogGovernor, CatalogEntry, ParameterNameCache
from .datasets import DatasetStore, Dataset, DatasetOwner
from .pipeline import PipelineValidator, parse_pipeline
from .engine import AnalyticsEngine, RunBounds, RunResult
from .join import JoinExecutor
from .compactor import EvidenceCompactor, CompactionLimits
from .errors import GovernanceError
from .orchestrator import GovernedQueryService

__all__ = [
    "TabularReader",
    "TabularType",
    "TabularData",
    "ReadResult",
    "ResultSetClassifier",
    "RoutingDecision",
    "CatalogGovernor",
    "CatalogEntry",
    "ParameterNameCache",
    "DatasetStore",
    "Dataset",
    "DatasetOwner",
    "PipelineValidator",
    "parse_pipeline",
    "AnalyticsEngine",
    "RunBounds",
    "RunResult",
    "JoinExecutor",
    "EvidenceCompactor",
    "CompactionLimits",
    "GovernanceError",
    "GovernedQueryService",
]
