"""
SHIELDCORE: Shielded Pool Client Core

Discovers, decrypts and spends UTXO-style notes of a privacy pool on an
account-based chain, and builds the calldata and proof witness for shield,
private transfer and unshield operations.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                        SHIELDED POOL CLIENT CORE                         │
    │                                                                          │
    │  OPERATIONS                                                              │
    │    builder.py     Shield calldata, witness assembly, transact calldata  │
    │    prover.py      Circuit shapes, Prover protocol, artifact caching     │
    │                                                                          │
    │  STATE                                                                   │
    │    account.py     Owned notes, balances, coin selection, pending marks  │
    │    indexer.py     Single-flight, atomic, idempotent event sync          │
    │    chain.py       ChainReader protocol, event codec, in-memory chain    │
    │    store.py       KeyValueStore, versioned snapshot codec               │
    │                                                                          │
    │  PRIMITIVES                                                              │
    │    merkle.py      Fixed-depth incremental Poseidon Merkle forest        │
    │    note.py        Notes, commitments, nullifiers, encrypted envelope    │
    │    keys.py        BabyJubJub spending, viewing, nullifying keys, 0zk    │
    │    babyjubjub.py  BabyJubJub curve and EdDSA-Poseidon signatures        │
    │    cipher.py      SymmetricCipher: one-shot and streaming AES-256-GCM   │
    │    field.py       BN254 field, Poseidon, keccak hash-to-field           │
    │    abi.py         Contract ABI codec                                    │
    │                                                                          │
    │  AMBIENT                                                                 │
    │    config.py  observability.py  resilience.py  cache.py  errors.py      │
    └─────────────────────────────────────────────────────────────────────────┘

Design Principles
─────────────────

    Verifier Parity: commitments, nullifiers and tree roots are computed
    exactly as the on-chain verifier computes them.

    Expected Negatives Are Values: "not my note" and "not enough funds" are
    result types, never exceptions.

    Atomic Sync: each fetched window is applied completely or not at all.

    Fail Closed: divergence from chain state halts private operations until
    an operator resyncs.
"""

__version__ = "0.1.0"


# Lazy imports keep ``import shieldcore`` cheap.
def __getattr__(name):
    """Lazy import SHIELDCORE modules on first access."""

    if name in ("Credential", "SpendingKey", "ViewingKey", "ShieldedAddress"):
        from shieldcore import keys
        return getattr(keys, name)

    if name in ("Note", "TokenData", "TokenType", "UnshieldNote", "NoteCodec",
                "Ciphertext", "DecryptFailure", "CommitmentPreimage", "ShieldCiphertext"):
        from shieldcore import note
        return getattr(note, name)

    if name in ("MerkleTree", "MerkleForest", "MerklePath"):
        from shieldcore import merkle
        return getattr(merkle, name)

    if name in ("ChainReader", "LogEvent", "Receipt", "InMemoryChain"):
        from shieldcore import chain
        return getattr(chain, name)

    if name in ("SyncEngine", "SyncReport", "SyncState"):
        from shieldcore import indexer
        return getattr(indexer, name)

    if name in ("Account", "OwnedNote", "NoteSelection", "InsufficientFunds", "Reservation"):
        from shieldcore import account
        return getattr(account, name)

    if name in ("CircuitShape", "MockProver", "CachedArtifactProvider", "FileArtifactLoader",
                "SUPPORTED_SHAPES"):
        from shieldcore import prover
        return getattr(prover, name)

    if name in ("TransactionBuilder", "TxData", "ShieldRequest", "TransferOutput",
                "UnshieldOutput", "CancellationToken", "OperationKind", "encode_batch"):
        from shieldcore import builder
        return getattr(builder, name)

    if name in ("InMemoryKeyValueStore", "FileKeyValueStore", "SnapshotCodec"):
        from shieldcore import store
        return getattr(store, name)

    raise AttributeError(f"module 'shieldcore' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Keys and notes
    "Credential",
    "SpendingKey",
    "ViewingKey",
    "ShieldedAddress",
    "Note",
    "TokenData",
    "TokenType",
    "UnshieldNote",
    "NoteCodec",
    "Ciphertext",
    "DecryptFailure",
    "CommitmentPreimage",
    "ShieldCiphertext",
    # Trees
    "MerkleTree",
    "MerkleForest",
    "MerklePath",
    # Chain and sync
    "ChainReader",
    "LogEvent",
    "Receipt",
    "InMemoryChain",
    "SyncEngine",
    "SyncReport",
    "SyncState",
    # Accounts
    "Account",
    "OwnedNote",
    "NoteSelection",
    "InsufficientFunds",
    "Reservation",
    # Proving and building
    "CircuitShape",
    "SUPPORTED_SHAPES",
    "MockProver",
    "CachedArtifactProvider",
    "FileArtifactLoader",
    "TransactionBuilder",
    "TxData",
    "ShieldRequest",
    "TransferOutput",
    "UnshieldOutput",
    "CancellationToken",
    "OperationKind",
    "encode_batch",
    # Persistence
    "InMemoryKeyValueStore",
    "FileKeyValueStore",
    "SnapshotCodec",
]
