"""Tests for rosetta_builder.keys."""

from __future__ import annotations

import os
import stat
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rosetta_builder.exceptions import KeyMaterialError
from rosetta_builder.keys import (
    KeyPair,
    exceeds_policy,
    file_mode,
    generate_key_pair,
    key_policy_mode,
    remove_key_pair,
    widen_to_group_readable,
)


def _process(returncode: int = 0, stderr: bytes = b"") -> MagicMock:
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(b"", stderr))
    return process


class TestKeyPair:
    def test_public_path(self, tmp_path):
        pair = KeyPair.at(tmp_path / "ssh_user_ed25519_key")
        assert pair.public_path == tmp_path / "ssh_user_ed25519_key.pub"
        assert pair.algorithm == "ed25519"

    def test_public_key_strips(self, tmp_path):
        pair = KeyPair.at(tmp_path / "key")
        pair.public_path.write_text("ssh-ed25519 AAAA comment\n")
        assert pair.public_key() == "ssh-ed25519 AAAA comment"

    def test_public_key_missing(self, tmp_path):
        with pytest.raises(KeyMaterialError):
            KeyPair.at(tmp_path / "key").public_key()

    def test_remove_key_pair(self, tmp_path):
        (tmp_path / "key").write_text("private")
        (tmp_path / "key.pub").write_text("public")
        remove_key_pair(tmp_path / "key")
        assert not (tmp_path / "key").exists()
        assert not (tmp_path / "key.pub").exists()
        remove_key_pair(tmp_path / "key")


class TestPolicy:
    @pytest.mark.parametrize(
        "mode,permit,expected",
        [
            (0o600, False, False),
            (0o400, False, False),
            (0o640, False, True),
            (0o604, False, True),
            (0o600, True, False),
            (0o640, True, False),
            (0o660, True, True),
            (0o644, True, True),
            (0o650, True, True),
        ],
    )
    def test_exceeds_policy(self, mode, permit, expected):
        assert exceeds_policy(mode, permit) is expected

    def test_policy_modes(self):
        assert key_policy_mode(False) == 0o600
        assert key_policy_mode(True) == 0o640

    def test_file_mode_missing(self, tmp_path):
        assert file_mode(tmp_path / "missing") is None

    def test_widen_to_group_readable(self, tmp_path):
        key = tmp_path / "key"
        key.write_text("private")
        os.chmod(key, 0o600)
        widen_to_group_readable(key)
        assert file_mode(key) == 0o640
        assert not exceeds_policy(file_mode(key), True)

    def test_widen_never_grants_other_access(self, tmp_path):
        key = tmp_path / "key"
        key.write_text("private")
        os.chmod(key, 0o677)
        widen_to_group_readable(key)
        assert file_mode(key) == key_policy_mode(True)
        assert file_mode(key) & stat.S_IRWXO == 0
        assert file_mode(key) & stat.S_IRWXG == stat.S_IRGRP

    def test_widen_missing_key(self, tmp_path):
        with pytest.raises(KeyMaterialError):
            widen_to_group_readable(tmp_path / "missing")


class TestGenerateKeyPair:
    async def test_runs_ssh_keygen(self, tmp_path):
        private = tmp_path / "key"
        private.write_text("stale")
        (tmp_path / "key.pub").write_text("stale")

        with patch("asyncio.create_subprocess_exec", return_value=_process()) as mock_exec:
            pair = await generate_key_pair(private, "user@darwin")

        args = mock_exec.call_args.args
        assert args[0] == "ssh-keygen"
        assert args[args.index("-f") + 1] == str(private)
        assert args[args.index("-C") + 1] == "user@darwin"
        assert args[args.index("-N") + 1] == ""
        assert args[args.index("-t") + 1] == "ed25519"
        assert pair.private_path == private
        assert not private.exists()

    async def test_failure(self, tmp_path):
        with patch(
            "asyncio.create_subprocess_exec", return_value=_process(1, b"bad things")
        ):
            with pytest.raises(KeyMaterialError, match="bad things"):
                await generate_key_pair(tmp_path / "key", "comment")

    async def test_missing_binary(self, tmp_path):
        with patch("asyncio.create_subprocess_exec", side_effect=FileNotFoundError("ssh-keygen")):
            with pytest.raises(KeyMaterialError, match="Failed to run ssh-keygen"):
                await generate_key_pair(tmp_path / "key", "comment")
