import os
import tempfile


# Ensure sensible defaults for tests before app import
_DB_DIR = tempfile.mkdtemp(prefix="marketplace-tests-")
os.environ["ENV"] = "dev"
os.environ["DB_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["AUTO_CREATE_SCHEMA"] = "false"
os.environ["RATE_LIMIT_BACKEND"] = "memory"
os.environ["RATE_LIMIT_PER_MINUTE"] = "100000"
os.environ["EXPIRY_SWEEP_POLL_SECS"] = "0"
os.environ["DOMAIN_EVENTS_MODE"] = "inline"
os.environ["PAYMOB_API_KEY"] = ""
os.environ["PAYMOB_HMAC_SECRET"] = ""

import pytest  # noqa: E402

from marketplace import payment_gateway  # noqa: E402
from marketplace.database import engine  # noqa: E402
from marketplace.models import Base  # noqa: E402


@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    payment_gateway.set_gateway(None)
    yield
    payment_gateway.set_gateway(None)
