"""Ordinal inscription commit/reveal construction.

The envelope builder, P2TR deriver, commit and reveal builders are exposed
here together with the :class:`InscriptionEngine` that ties them to a tracker
and broadcaster.
"""

from ordinalsplus.ordinals.commit import (
    BatchCommitOutput,
    BatchCommitRequest,
    BatchCommitResult,
    CommitPlan,
    CommitRequest,
    CommitResult,
    prepare_batch_commit,
    prepare_commit,
)
from ordinalsplus.ordinals.envelope import (
    InscriptionEnvelope,
    build_envelope,
    build_leaf_script,
    parse_envelope,
)
from ordinalsplus.ordinals.reveal import RevealPlan, RevealRequest, RevealResult, create_reveal
from ordinalsplus.ordinals.taproot import (
    LeafScriptInfo,
    P2TRDetails,
    TapLeaf,
    derive_address,
    verify_leaf_commitment,
)
from ordinalsplus.ordinals.workflows import (
    InscriptionEngine,
    PreparedInscription,
    prepare_inscription,
    write_receipt,
)

__all__ = [
    "InscriptionEnvelope",
    "build_envelope",
    "build_leaf_script",
    "parse_envelope",
    "TapLeaf",
    "LeafScriptInfo",
    "P2TRDetails",
    "derive_address",
    "verify_leaf_commitment",
    "CommitRequest",
    "CommitPlan",
    "CommitResult",
    "prepare_commit",
    "BatchCommitRequest",
    "BatchCommitOutput",
    "BatchCommitResult",
    "prepare_batch_commit",
    "RevealRequest",
    "RevealPlan",
    "RevealResult",
    "create_reveal",
    "PreparedInscription",
    "prepare_inscription",
    "InscriptionEngine",
    "write_receipt",
]
