"""Tests for the claimflow CLI."""

from __future__ import annotations

import json

import pytest

from claimflow.cli import create_parser, main
from claimflow.persistence.memory import get_in_memory_tables


class TestParser:
    def test_no_command_prints_help(self, capsys: pytest.CaptureFixture[str]) -> None:
        assert main([]) == 0
        assert "claimflow" in capsys.readouterr().out

    def test_serve_defaults(self) -> None:
        args = create_parser().parse_args(["serve"])

        assert args.host == "127.0.0.1"
        assert args.port == 8000

    def test_migrate_options(self) -> None:
        args = create_parser().parse_args(["migrate", "--revision", "0001", "--downgrade"])

        assert args.revision == "0001"
        assert args.downgrade is True

    def test_create_organization_requires_name(self) -> None:
        with pytest.raises(SystemExit):
            create_parser().parse_args(["create-organization"])


class TestCommands:
    def test_create_organization_in_memory(self, capsys: pytest.CaptureFixture[str]) -> None:
        exit_code = main(["create-organization", "--name", "Acme Health", "--id", "org-acme"])

        assert exit_code == 0
        printed = json.loads(capsys.readouterr().out)
        assert printed["id"] == "org-acme"
        assert printed["name"] == "Acme Health"
        assert get_in_memory_tables().organizations["org-acme"].name == "Acme Health"

    def test_worker_requires_redis(self) -> None:
        """The standalone worker refuses the per-process queue."""
        assert main(["worker"]) == 2

    def test_migrate_without_database_is_config_error(self) -> None:
        assert main(["migrate"]) == 2
