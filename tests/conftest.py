import pytest

from shipline.artifacts import ArtifactStore
from shipline.engine import Engine
from shipline.settings import Settings
from shipline.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    # keep test output readable; results are asserted, not printed
    console = Console(quiet=True)
    set_console(console)
    yield console
    set_console(Console())


@pytest.fixture
def settings(tmp_path):
    return Settings(state_dir=tmp_path / "state", max_workers=4)


@pytest.fixture
def engine(settings):
    return Engine(settings)


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(tmp_path / "artifacts")
