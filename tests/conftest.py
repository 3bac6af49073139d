from pathlib import Path
import subprocess
import sys
from typing import Callable, Dict, List, Optional

import pytest

# Ensure repository root is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


class CommandRecorder:
    """Stand-in for ``subprocess.run`` that records every command."""

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.returncodes: Dict[str, int] = {}
        self.stdout: Dict[str, str] = {}
        self.side_effects: Dict[str, Callable[[List[str]], None]] = {}

    def __call__(self, cmd, check=False, input=None, capture_output=False, text=False, env=None):
        argv = [str(part) for part in cmd]
        self.calls.append(argv)
        self.inputs.append(input)
        effect = self.side_effects.get(argv[0])
        if effect is not None:
            effect(argv)
        return subprocess.CompletedProcess(
            argv,
            self.returncodes.get(argv[0], 0),
            stdout=self.stdout.get(argv[0], ""),
            stderr="",
        )

    def programs(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def fake_run(monkeypatch) -> CommandRecorder:
    from nixos_bootstrap import commands

    recorder = CommandRecorder()
    monkeypatch.setattr(commands.subprocess, "run", recorder)
    return recorder
