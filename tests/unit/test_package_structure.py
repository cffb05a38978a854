"""
Unit tests for validating package structure and imports.
"""

from pathlib import Path

import pytest


def test_package_imports():
    """Test that all main package modules can be imported."""
    import harbormaster

    assert hasattr(harbormaster, '__version__')
    assert harbormaster.__version__ == "1.0.0"

    assert hasattr(harbormaster, 'ProjectOrchestrator')
    assert hasattr(harbormaster, 'EventStore')
    assert hasattr(harbormaster, 'get_logger')


def test_api_module():
    """Test API module imports."""
    from harbormaster.api import run_server
    from harbormaster.api.app import app, create_app

    assert callable(run_server)
    assert callable(create_app)
    assert app.title == "Harbormaster API"


def test_core_module():
    """Test core module imports."""
    from harbormaster.core import EngineGateway, ProjectOrchestrator

    assert hasattr(ProjectOrchestrator, 'up')
    assert hasattr(EngineGateway, 'stream_logs')


def test_storage_module():
    """Test storage module imports."""
    from harbormaster.storage import EventStore

    assert hasattr(EventStore, 'record_event')


def test_utils_module():
    """Test utils module imports."""
    from harbormaster.utils import get_logger, logger

    assert callable(get_logger)
    assert hasattr(logger, 'info')


def test_cli_version(capsys):
    """Test CLI version command."""
    from harbormaster.cli import main

    assert main(["version"]) == 0
    assert "1.0.0" in capsys.readouterr().out


def test_cli_without_command():
    from harbormaster.cli import main

    assert main([]) == 1


def test_project_structure():
    """Test that the project follows src-layout."""
    project_root = Path(__file__).parent.parent.parent

    assert (project_root / "src").exists()
    assert (project_root / "src" / "harbormaster").exists()
    assert (project_root / "tests").exists()
    assert (project_root / "pyproject.toml").exists()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
