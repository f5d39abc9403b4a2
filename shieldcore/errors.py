"""
SHIELDCORE Error Taxonomy

Three classes of failure, distinguished by what the caller should do next:

    Retryable       Transient. Safe to retry the same call unchanged
                    (chain read failure, prover failure, stale root,
                    sync already in flight).

    Fatal           Corruption or an internal bug. Private-operation
                    building for the affected account halts until an
                    operator-level resync (root divergence, nullifier
                    inconsistency, unsupported circuit arity).

    Usage           Caller error against a single call (bad index, full
                    tree, invalid build request, malformed snapshot).

Expected negatives ("this ciphertext is not mine", "not enough funds") are
not exceptions at all. They are result values: see
``shieldcore.note.DecryptFailure`` and ``shieldcore.account.InsufficientFunds``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ShieldError(Exception):
    """Base class for every error raised by shieldcore."""

    error_code = "SHIELD_ERROR"
    retryable = False
    fatal = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
            "fatal": self.fatal,
            "details": self.details,
        }


# =============================================================================
# MERKLE TREE
# =============================================================================

class InvalidIndex(ShieldError):
    """Leaf index is negative or not yet inserted."""
    error_code = "INVALID_INDEX"

    def __init__(self, index: int, size: int):
        super().__init__(f"Leaf index {index} out of range (tree holds {size} leaves)",
                         index=index, size=size)
        self.index = index
        self.size = size


class TreeFull(ShieldError):
    """Insertion would exceed the fixed tree capacity."""
    error_code = "TREE_FULL"

    def __init__(self, tree_number: int, capacity: int, requested: int):
        super().__init__(
            f"Tree {tree_number} cannot take {requested} more leaves (capacity {capacity})",
            tree_number=tree_number, capacity=capacity, requested=requested,
        )
        self.tree_number = tree_number


# =============================================================================
# SYNC
# =============================================================================

class ChainReadError(ShieldError):
    """Chain reader failed after retries. Safe to retry the sync."""
    error_code = "CHAIN_READ_FAILED"
    retryable = True


class MalformedLog(ShieldError):
    """A log for a known event could not be decoded. Fatal for this sync attempt."""
    error_code = "MALFORMED_LOG"


class SyncInProgress(ShieldError):
    """Another sync is already running against the same tree."""
    error_code = "SYNC_IN_PROGRESS"
    retryable = True


class FatalStateDivergence(ShieldError):
    """Local state no longer matches the chain. Requires resync from a checkpoint."""
    error_code = "STATE_DIVERGENCE"
    fatal = True


class NullifierInconsistency(FatalStateDivergence):
    """The same nullifier was observed spent twice."""
    error_code = "NULLIFIER_INCONSISTENCY"


# =============================================================================
# ACCOUNT AND BUILDER
# =============================================================================

class AccountHalted(ShieldError):
    """The account observed fatal divergence; private operations are refused."""
    error_code = "ACCOUNT_HALTED"
    fatal = True


class UnsupportedArity(ShieldError):
    """A build produced a circuit shape outside the supported set."""
    error_code = "UNSUPPORTED_ARITY"
    fatal = True

    def __init__(self, nullifiers: int, commitments: int):
        super().__init__(
            f"No circuit for {nullifiers} nullifiers x {commitments} commitments",
            nullifiers=nullifiers, commitments=commitments,
        )
        self.nullifiers = nullifiers
        self.commitments = commitments


class ProverFailure(ShieldError):
    """The external prover failed or timed out."""
    error_code = "PROVER_FAILURE"
    retryable = True

    def __init__(self, message: str, cause: Optional[BaseException] = None, **details: Any):
        super().__init__(message, **details)
        self.cause = cause


class StaleProof(ShieldError):
    """The tree advanced while proving; rebuild against the fresh root."""
    error_code = "STALE_PROOF"
    retryable = True

    def __init__(self, tree_number: int, proved_root: int, current_root: int):
        super().__init__(
            f"Root of tree {tree_number} moved from {proved_root:#x} to {current_root:#x}",
            tree_number=tree_number,
        )
        self.tree_number = tree_number
        self.proved_root = proved_root
        self.current_root = current_root


class BuildError(ShieldError):
    """Invalid private operation request."""
    error_code = "BUILD_ERROR"


class BuildCancelled(ShieldError):
    """The caller cancelled an in-progress build."""
    error_code = "BUILD_CANCELLED"


class ArtifactNotFound(ShieldError):
    """No circuit artifacts exist for the requested shape."""
    error_code = "ARTIFACT_NOT_FOUND"


# =============================================================================
# PERSISTENCE
# =============================================================================

class SnapshotError(ShieldError):
    """A persisted snapshot is of an unknown version or fails validation."""
    error_code = "SNAPSHOT_INVALID"
