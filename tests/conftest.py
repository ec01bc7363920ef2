import os
import sys
import tempfile

# Settings are read from the environment at import time.
_tmp = tempfile.mkdtemp(prefix="tdhp-tests-")
os.environ["TDHP_DB_PATH"] = os.path.join(_tmp, "events.db")
os.environ.setdefault("TDHP_BASE_URL", "http://192.168.1.100")
os.environ["TDHP_RESYNC_INTERVAL_S"] = "0"

# Ensure project root is importable (so `import main` / `import cli` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

import pytest

from tdhp import db
from tdhp.containers import ContainerDescriptor

BASE_URL = "http://192.168.1.100"


@pytest.fixture(scope="session", autouse=True)
def event_log():
    db.init_db()


@pytest.fixture
def make_container():
    def _make(cid, labels=None, running=True, name=None, ports=None):
        return ContainerDescriptor(
            id=cid,
            labels=labels or {},
            running=running,
            name=name if name is not None else f"c-{cid}",
            published_ports=ports or {},
        )

    return _make
