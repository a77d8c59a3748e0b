import pytest

from config import SingletonConfig


def pytest_addoption(parser):
    parser.addoption("--skip-slow", action="store_true", help="Skip tests that push large content through whole-file rewrites")
    parser.addoption("--gz-debug", action="append", default=[], help="Add a gzfile debug flag (mem, verify)")

def pytest_configure(config):
    config.addinivalue_line("markers", "slow: pushes large content through whole-file rewrites")

def pytest_collection_modifyitems(config, items):
    if config.getoption("--skip-slow"):
        skip_slow = pytest.mark.skip(reason="Skipping tests with large content")
        for item in items:
            if "slow" in item.keywords:
                item.add_marker(skip_slow)

@pytest.fixture(scope="session", autouse=True)
def gz_debug(request):
    cfg = SingletonConfig()
    saved = cfg.debug
    cfg.set_debug(request.config.getoption("--gz-debug"))
    yield cfg.debug
    cfg.debug = saved
