"""
Core reconciliation functionality for terrycore.

This module provides the engine that brings declared resources in line with
the systems behind them:
- Building the dependency graph from declarations
- Persisting state with locking
- Planning changes against recorded state
- Executing plans concurrently through providers
"""

from .errors import (
    EngineError,
    ConfigurationError,
    UnresolvedReferenceError,
    CycleError,
    DuplicateAddressError,
    UnknownResourceTypeError,
    LockContention,
    ProviderError,
    StateCorruption,
    StateBackendError,
    StalePlanError,
    ResourceNotFoundError,
)
from .values import Value, ValueKind, ResourceRef, NULL, UNKNOWN
from .graph import ResourceDeclaration, ResourceGraph, ResourceNode, GraphBuilder, MANAGED, DATA
from .providers import Provider, ProviderRegistry, ResourceTypePolicy
from .state_store import (
    StateStore,
    StateBackend,
    MemoryBackend,
    LocalBackend,
    StateRecord,
    StateSnapshot,
    LockInfo,
)
from .differ import Action, Change, Plan, Drift, Differ
from .executor import Executor, ApplyResult, ChangeOutcome, ChangeStatus
from .engine import Engine
from .config_loader import ConfigLoader, load_tfvars
from .render import render_plan, render_apply_result

__all__ = [
    "EngineError",
    "ConfigurationError",
    "UnresolvedReferenceError",
    "CycleError",
    "DuplicateAddressError",
    "UnknownResourceTypeError",
    "LockContention",
    "ProviderError",
    "StateCorruption",
    "StateBackendError",
    "StalePlanError",
    "ResourceNotFoundError",
    "Value",
    "ValueKind",
    "ResourceRef",
    "NULL",
    "UNKNOWN",
    "ResourceDeclaration",
    "ResourceGraph",
    "ResourceNode",
    "GraphBuilder",
    "MANAGED",
    "DATA",
    "Provider",
    "ProviderRegistry",
    "ResourceTypePolicy",
    "StateStore",
    "StateBackend",
    "MemoryBackend",
    "LocalBackend",
    "StateRecord",
    "StateSnapshot",
    "LockInfo",
    "Action",
    "Change",
    "Plan",
    "Drift",
    "Differ",
    "Executor",
    "ApplyResult",
    "ChangeOutcome",
    "ChangeStatus",
    "Engine",
    "ConfigLoader",
    "load_tfvars",
    "render_plan",
    "render_apply_result",
]
