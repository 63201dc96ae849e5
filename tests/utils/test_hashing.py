# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Tests for hashing utilities. Corpus identity depends on these being stable.
"""

from pathlib import Path

from loralab.utils.hashing import compute_sha256, compute_sha256_bytes, compute_sha256_parts


class TestSha256:
    def test_empty_bytes_has_known_hash(self) -> None:
        expected = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
        assert compute_sha256_bytes(b"") == expected

    def test_file_hash_matches_bytes_hash(self, tmp_path: Path) -> None:
        content = b"some file content for hashing"
        test_file = tmp_path / "test.bin"
        test_file.write_bytes(content)
        assert compute_sha256(test_file) == compute_sha256_bytes(content)


class TestPartsHashing:
    def test_parts_are_length_prefixed(self) -> None:
        assert compute_sha256_parts(["ab", "c"]) != compute_sha256_parts(["a", "bc"])

    def test_parts_hash_is_deterministic(self) -> None:
        assert compute_sha256_parts(["x", "y"]) == compute_sha256_parts(["x", "y"])
