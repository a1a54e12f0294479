"""Shared pytest fixtures for fedprov tests."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep config and state lookups away from the real home directory."""
    for var in ('FEDPROV_CONFIG', 'FEDPROV_MANIFEST', 'FEDPROV_STATE'):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv('XDG_CONFIG_HOME', str(tmp_path / 'xdg-config'))
    monkeypatch.setenv('XDG_STATE_HOME', str(tmp_path / 'xdg-state'))


@pytest.fixture
def state_path(tmp_path):
    """Path for a state file that does not exist yet."""
    return tmp_path / 'state' / 'state.json'


@pytest.fixture
def manifest_file(tmp_path):
    """Write a small valid manifest and return its path.

    Actions:
    - InstallPackage:flatpak
    - EnableRepository:flathub (depends on flatpak)
    - InstallFlatpak:org.signal.Signal (depends on flathub)
    - WriteFile (source relative to the manifest)
    """
    files = tmp_path / 'files'
    files.mkdir()
    (files / 'zshrc').write_text('export ZSH="$HOME/.oh-my-zsh"\n')

    path = tmp_path / 'workstation.yaml'
    path.write_text(f"""
schema_version: 1
name: test-workstation
description: Test manifest
actions:
  - kind: InstallPackage
    target: flatpak
  - kind: EnableRepository
    target: flathub
    params:
      backend: flatpak
      url: https://flathub.org/repo/flathub.flatpakrepo
    depends_on: [InstallPackage:flatpak]
  - kind: InstallFlatpak
    target: org.signal.Signal
    depends_on: [EnableRepository:flathub]
  - kind: WriteFile
    target: {tmp_path / 'home' / '.zshrc'}
    params:
      source: files/zshrc
      mode: "0644"
""")
    return path
