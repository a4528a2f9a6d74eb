import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
for path in (os.path.join(ROOT, "src"), os.path.dirname(__file__)):
    if path not in sys.path:
        sys.path.insert(0, path)


def pytest_configure(config):
    # flipper_bridge.constants sets the package log level from FLIPPER_DEBUG;
    # show those records live when it is on
    if os.getenv("FLIPPER_DEBUG", "").lower() in ("1", "true", "yes"):
        config.option.log_cli = True
        config.option.log_cli_level = "DEBUG"
