# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/rsboot/errors.py
from __future__ import annotations

from enum import Enum
from typing import List, Optional


class RsbootError(RuntimeError):
    """Base class for rsboot failures."""


# ---------------------------------------------------------------------
# Config file
# ---------------------------------------------------------------------
class ConfigParseError(RsbootError):
    """Raised when a mongod config file is not well-formed."""

    def __init__(self, message: str, line: Optional[int] = None):
        self.line = line
        super().__init__(f"line {line}: {message}" if line else message)


class ConfigIOError(RsbootError):
    """Raised when a config file cannot be read, backed up or written."""


class ConfigChangedError(ConfigIOError):
    """Raised when the file on disk changed between read and write."""


# ---------------------------------------------------------------------
# Cluster definition
# ---------------------------------------------------------------------
class ClusterDefinitionError(RsbootError):
    """Raised when a cluster definition (or its secrets file) is unusable."""

    def __init__(self, source: str, problems: List[str]):
        self.source = source
        self.problems = list(problems)
        super().__init__("\n".join(f"  {p}" for p in self.problems))


# ---------------------------------------------------------------------
# Topology
# ---------------------------------------------------------------------
class TopologyValidationError(RsbootError):
    DUPLICATE_ID = "DuplicateId"
    DUPLICATE_ENDPOINT = "DuplicateEndpoint"
    EMPTY_TOPOLOGY = "EmptyTopology"
    NON_CONTIGUOUS_IDS = "NonContiguousIds"
    INVALID_PRIORITY = "InvalidPriority"
    INVALID_PORT = "InvalidPort"
    LAYOUT_MISMATCH = "LayoutMismatch"

    def __init__(self, kind: str, message: str):
        self.kind = kind
        super().__init__(f"{kind}: {message}")


# ---------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------
class ExecutionError(RsbootError):
    """Raised when a command cannot be dispatched to a node."""


class ExecTimeoutError(ExecutionError):
    pass


class CommandFailedError(ExecutionError):
    def __init__(self, message: str, result=None):
        self.result = result
        super().__init__(message)


# ---------------------------------------------------------------------
# Database client
# ---------------------------------------------------------------------
class DbConnectionError(RsbootError):
    pass


class DbAuthError(RsbootError):
    pass


class DbCommandError(RsbootError):
    def __init__(self, message: str, code: Optional[int] = None, code_name: Optional[str] = None):
        self.code = code
        self.code_name = code_name
        super().__init__(message)


# ---------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------
class ServiceDidNotStart(RsbootError):
    pass


class TopologyConflict(RsbootError):
    pass


class CredentialConflict(RsbootError):
    pass


class NoPrimaryElected(RsbootError):
    pass


class BootstrapCancelled(RsbootError):
    pass


class SecurityConfigError(RsbootError):
    """Raised when the options cannot secure a replica set, e.g. no key file."""


class FailureKind(str, Enum):
    CONFIG_ERROR = "ConfigError"
    SERVICE_DID_NOT_START = "ServiceDidNotStart"
    TOPOLOGY_CONFLICT = "TopologyConflict"
    NO_PRIMARY_ELECTED = "NoPrimaryElected"
    CREDENTIAL_CONFLICT = "CredentialConflict"
    AUTH_ERROR = "AuthError"
    CONNECTION_ERROR = "ConnectionError"
    TIMEOUT_ERROR = "TimeoutError"
    IO_ERROR = "IOError"
    VALIDATION_ERROR = "ValidationError"
    CANCELLED = "Cancelled"


def failure_kind_for(exc: BaseException) -> FailureKind:
    """Map an exception raised inside a transition onto the reported failure kind."""
    mapping = (
        (ServiceDidNotStart, FailureKind.SERVICE_DID_NOT_START),
        (TopologyConflict, FailureKind.TOPOLOGY_CONFLICT),
        (NoPrimaryElected, FailureKind.NO_PRIMARY_ELECTED),
        (CredentialConflict, FailureKind.CREDENTIAL_CONFLICT),
        (BootstrapCancelled, FailureKind.CANCELLED),
        (DbAuthError, FailureKind.AUTH_ERROR),
        (DbConnectionError, FailureKind.CONNECTION_ERROR),
        (ExecTimeoutError, FailureKind.TIMEOUT_ERROR),
        (ConfigIOError, FailureKind.IO_ERROR),
        (TopologyValidationError, FailureKind.VALIDATION_ERROR),
        (SecurityConfigError, FailureKind.VALIDATION_ERROR),
    )
    for exc_type, kind in mapping:
        if isinstance(exc, exc_type):
            return kind
    return FailureKind.CONFIG_ERROR


class UnsupportedPlatformError(RsbootError):
    """Raised when a node runs an OS the installer has no package recipe for."""
