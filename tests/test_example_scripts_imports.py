import importlib
import sys
from pathlib import Path


REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT / "API"))


def test_example_scripts_are_import_safe():
    # These scripts are meant to be runnable examples. Importing them should not immediately
    # create a Client, perform network calls, or call sys.exit().
    modules = [
        "list_subscriptions",
    ]

    for name in modules:
        mod = importlib.import_module(name)
        assert hasattr(mod, "main")


def test_library_modules_do_not_install_log_handlers():
    import logging

    for name in ("rsc", "rsc_accounts", "rsc_azure", "rsc_graphql", "rsc_tasks", "rsc_token"):
        importlib.import_module(name)

    handlers = [h for h in logging.getLogger("rsc").handlers if getattr(h, "_rsc_handler", False)]
    assert handlers == []
