# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
safetensors codec for weight snapshots.

The export format is plain safetensors: tensor name -> dtype, shape, raw
bytes, with string metadata in the header. Adapter tensors follow the
usual LoRA naming, ``<module path>.lora_A.weight`` and
``<module path>.lora_B.weight``. Round trips are bit-exact; safetensors
stores raw little-endian bytes and never converts.

File exports are atomic (temp file, then rename) and return the SHA-256
of what was written.
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from safetensors import safe_open
from safetensors.torch import load as load_bytes
from safetensors.torch import save as save_bytes
from safetensors.torch import save_file

from loralab.logging.logger import get_logger
from loralab.utils.hashing import compute_sha256
from loralab.weights.snapshot import ADAPTER_KIND, WeightSnapshot

logger: logging.Logger = get_logger(__name__)

FORMAT_VERSION = "1.0"
_HEADER_LENGTH_BYTES = 8


def _header_metadata(snapshot: WeightSnapshot) -> dict[str, str]:
    metadata = {str(key): str(value) for key, value in snapshot.metadata.items()}
    metadata["format_version"] = FORMAT_VERSION
    metadata["snapshot_kind"] = snapshot.kind
    return metadata


def _snapshot_from(tensors: dict, metadata: dict[str, str]) -> WeightSnapshot:
    metadata = dict(metadata)
    kind = metadata.pop("snapshot_kind", ADAPTER_KIND)
    return WeightSnapshot.capture(kind=kind, tensors=tensors, metadata=metadata)


def encode_snapshot(snapshot: WeightSnapshot) -> bytes:
    """Serialize to safetensors bytes."""
    return save_bytes(dict(snapshot.tensors), metadata=_header_metadata(snapshot))


def read_metadata(data: bytes) -> dict[str, str]:
    """The ``__metadata__`` block of serialized safetensors bytes."""
    if len(data) < _HEADER_LENGTH_BYTES:
        raise ValueError("Data too short to be safetensors")
    header_length = int.from_bytes(data[:_HEADER_LENGTH_BYTES], "little")
    header = json.loads(data[_HEADER_LENGTH_BYTES : _HEADER_LENGTH_BYTES + header_length])
    return dict(header.get("__metadata__", {}))


def decode_snapshot(data: bytes) -> WeightSnapshot:
    """Inverse of ``encode_snapshot``."""
    return _snapshot_from(load_bytes(data), read_metadata(data))


def export_snapshot(snapshot: WeightSnapshot, path: Path) -> str:
    """
    Write ``snapshot`` to ``path`` atomically.

    Returns:
        SHA-256 hex digest of the written file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".export_tmp_", suffix=".safetensors")
    os.close(fd)
    tmp_path = Path(tmp_name)
    try:
        save_file(dict(snapshot.tensors), str(tmp_path), metadata=_header_metadata(snapshot))
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()

    checksum = compute_sha256(path)
    logger.info(
        "Weights exported",
        extra={
            "path": str(path),
            "kind": snapshot.kind,
            "tensors": len(snapshot.tensors),
            "sha256": checksum,
        },
    )
    return checksum


def import_snapshot(path: Path) -> WeightSnapshot:
    """
    Raises:
        FileNotFoundError: If ``path`` does not exist.
    """
    if not path.is_file():
        raise FileNotFoundError(f"Weight file not found: {path}")
    with safe_open(str(path), framework="pt") as handle:
        metadata = handle.metadata() or {}
        tensors = {name: handle.get_tensor(name) for name in handle.keys()}
    logger.info("Weights imported", extra={"path": str(path), "tensors": len(tensors)})
    return _snapshot_from(tensors, metadata)
