"""Tests for the destructive-operation confirmation gate."""

import pytest

from nixos_bootstrap import safety
from nixos_bootstrap.params import resolve_parameters


def _params(**overrides):
    values = dict(
        disk="/dev/vda",
        username="alice",
        password="hunter2",
        hostname="laptop",
        timezone="UTC",
        locale="en_US.UTF-8",
        repo_url="https://example.com/cfg.git",
        config_path=None,
        swap_size_gb=16,
        block_device_check=lambda path: True,
    )
    values.update(overrides)
    return resolve_parameters(**values)


def test_exact_yes_confirms(capsys) -> None:
    prompts = []

    def prompt(text):
        prompts.append(text)
        return "yes"

    assert safety.confirm_destruction(_params(), prompt=prompt) is True
    assert prompts == [safety.CONFIRMATION_PROMPT]
    assert "cancelled" not in capsys.readouterr().out


@pytest.mark.parametrize("answer", ["YES", "Yes", "y", "", " yes", "yes ", "no"])
def test_anything_else_cancels(answer, capsys) -> None:
    assert safety.confirm_destruction(_params(), prompt=lambda text: answer) is False
    assert "Installation cancelled by user." in capsys.readouterr().out


def test_end_of_input_cancels(capsys) -> None:
    def closed(text):
        raise EOFError

    assert safety.confirm_destruction(_params(), prompt=closed) is False


def test_summary_lists_parameters_without_password(capsys) -> None:
    safety.confirm_destruction(_params(), prompt=lambda text: "no")

    out = capsys.readouterr().out
    assert "Installation Details" in out
    assert "/dev/vda" in out
    assert "16G" in out
    assert "https://example.com/cfg.git" in out
    assert "built-in template" in out
    assert "WIPE ALL DATA on the disk /dev/vda" in out
    assert "hunter2" not in out


def test_summary_names_repository_file() -> None:
    summary = safety.format_summary(
        _params(config_path="hosts/laptop/configuration.nix")
    )

    assert "hosts/laptop/configuration.nix (copied from repository)" in summary


def test_summary_explains_password_use() -> None:
    template = safety.format_summary(_params())
    repository = safety.format_summary(_params(config_path="configuration.nix"))

    assert "Password:       hashed into initialHashedPassword" in template
    assert "used only where the file contains __PASSWORD_HASH_PLACEHOLDER__" in repository
    assert "hunter2" not in template + repository
