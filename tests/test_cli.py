"""Tests for the ``foreman`` command line."""

import sys

import pytest

from foreman.__main__ import main
from foreman.config import load_config


def _run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["foreman", *argv])
    main()


def test_init_scaffolds_loadable_config(monkeypatch, project, capsys):
    _run(monkeypatch, "init", "--project-root", str(project))

    config = load_config(project / ".foreman" / "config.yaml")
    assert config.security.allowed_roots == [str(project)]
    assert config.auto_mode.max_concurrency == 3
    script = project / ".foreman" / "worktree-init.sh"
    assert script.read_text().startswith("#!/usr/bin/env bash")
    assert "Initialized Foreman" in capsys.readouterr().out


def test_init_refuses_to_overwrite(monkeypatch, project):
    _run(monkeypatch, "init", "--project-root", str(project))
    with pytest.raises(SystemExit) as excinfo:
        _run(monkeypatch, "init", "--project-root", str(project))
    assert excinfo.value.code == 1


def test_no_command_prints_help(monkeypatch, capsys):
    with pytest.raises(SystemExit):
        _run(monkeypatch)
    assert "usage: foreman" in capsys.readouterr().out
