import logging
import sys
from pathlib import Path

# repo root on sys.path so steps can import from src
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))


def before_all(context):
    logging.getLogger("httpx").setLevel(logging.WARNING)


def before_scenario(context, scenario):
    # Reset per scenario
    context.api = None
    context.error = None
    context.result = None
    context.report = None
    context.plan = None
    context.run_log = None
    context.tmp_files = []


def after_scenario(context, scenario):
    for path in context.tmp_files:
        Path(path).unlink(missing_ok=True)
