"""Tests for environment-driven settings."""

from pathlib import Path

from shipline.settings import Settings


def test_from_env():
    s = Settings.from_env({
        "SHIPLINE_STATE_DIR": "/tmp/state",
        "SHIPLINE_MAX_WORKERS": "3",
        "SHIPLINE_PAGES_URL": "https://pages.test",
        "SHIPLINE_KEEP_WORKSPACES": "yes",
    })
    assert s.state_dir == Path("/tmp/state")
    assert s.max_workers == 3
    assert s.pages_url == "https://pages.test"
    assert s.keep_workspaces is True
    assert s.publish_endpoint is None
    assert s.artifacts_dir == Path("/tmp/state/artifacts")
    assert s.publish_dir == Path("/tmp/state/pages")


def test_defaults():
    s = Settings.from_env({})
    assert s.state_dir == Path(".shipline")
    assert s.max_workers is None
    assert s.keep_workspaces is False


def test_override_ignores_none():
    s = Settings.from_env({"SHIPLINE_MAX_WORKERS": "2"}).override(max_workers=None, state_dir=Path("x"))
    assert s.max_workers == 2
    assert s.state_dir == Path("x")
    assert s.runs_dir == Path("x/runs")


def test_pages_dir_override():
    s = Settings.from_env({"SHIPLINE_PAGES_DIR": "/srv/pages"})
    assert s.publish_dir == Path("/srv/pages")
