"""Skip guards for live tests.

Every live test is guarded by a skip check on the environment variable naming
the FHIR server. Tests silently skip when it is absent; they never fail due
to missing config.

Required environment variables:
  CLAIMS_LIVE_FHIR_BASE_URL   Base URL of a writable FHIR R4 server,
                              e.g. http://localhost:8080/fhir (HAPI JPA)

Set it in your shell before running:
  export CLAIMS_LIVE_FHIR_BASE_URL=http://localhost:8080/fhir
  pytest tests/live -v -m live
"""

from __future__ import annotations

import os

import pytest

LIVE_FHIR_ENV = "CLAIMS_LIVE_FHIR_BASE_URL"

skip_no_fhir = pytest.mark.skipif(
    not os.environ.get(LIVE_FHIR_ENV),
    reason=f"Set {LIVE_FHIR_ENV} to run live FHIR tests",
)


@pytest.fixture(scope="session")
def live_fhir_base_url() -> str:
    url = os.environ.get(LIVE_FHIR_ENV, "")
    if not url:
        pytest.skip(f"{LIVE_FHIR_ENV} not set")
    return url.rstrip("/")
