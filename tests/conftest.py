"""Pytest configuration and shared fixtures for clinical gateway API tests."""

import socket
import threading
import time
from dataclasses import dataclass

import pytest
import requests
from clinical_gateway.app import create_app
from clinical_gateway.audit import FhirAuditSink
from clinical_gateway.credentials import StaticTokenSource
from clinical_gateway.episodes import EpisodeController
from clinical_gateway.notifications import LoggingPublisher
from clinical_gateway.otp import EngagementOtpVerifier
from clinical_gateway.resource_gateway import FhirStoreClient
from clinical_gateway.services import Services
from clinical_gateway.terminology import OclClient
from clinical_gateway.timeline import TimelineAggregator
from flask import Flask
from flask.testing import FlaskClient
from stubs.stub_fhir_store import FhirStoreStub
from stubs.stub_ocl import OclApiStub
from stubs.stub_otp import EngagementOtpStub

PATIENT_PHONE = "+254722000001"
PATIENT_OTP = "123456"
PROVIDER_PHONE = "+254733000002"
PROVIDER_OTP = "654321"
PROVIDER_CODE = "PROV-001"


@dataclass
class Backends:
    """The in-memory services standing behind one application instance."""

    fhir_store: FhirStoreStub
    otp: EngagementOtpStub
    ocl: OclApiStub


def make_backends() -> Backends:
    otp = EngagementOtpStub()
    otp.issue(PATIENT_PHONE, PATIENT_OTP)
    otp.issue(PROVIDER_PHONE, PROVIDER_OTP)
    return Backends(fhir_store=FhirStoreStub(), otp=otp, ocl=OclApiStub())


def make_services(backends: Backends, with_terminology: bool = True) -> Services:
    gateway = FhirStoreClient(
        FhirStoreStub.BASE_URL,
        StaticTokenSource("test-token"),
        request_method=backends.fhir_store.request,
    )
    verifier = EngagementOtpVerifier(
        "https://engagement.example.org", post_method=backends.otp.post
    )
    terminology = None
    if with_terminology:
        terminology = OclClient(
            OclApiStub.BASE_URL, "ocl-token", get_method=backends.ocl.get
        )
    return Services(
        gateway=gateway,
        episodes=EpisodeController(
            gateway, verifier, FhirAuditSink(gateway), LoggingPublisher()
        ),
        timeline=TimelineAggregator(gateway),
        terminology=terminology,
    )


@pytest.fixture
def backends() -> Backends:
    return make_backends()


@pytest.fixture
def app(backends: Backends) -> Flask:
    """Create a test instance of the Flask application over in-memory backends."""
    flask_app = create_app(make_services(backends))
    flask_app.config.update({"TESTING": True})
    return flask_app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create a test client for the Flask application."""
    return app.test_client()


@pytest.fixture(scope="module")
def live_backends() -> Backends:
    return make_backends()


@pytest.fixture(scope="module")
def provider_url(live_backends: Backends) -> str:
    """Start the Flask app in a separate thread and return its URL.

    This fixture is used by tests that need to make real HTTP requests
    to the Flask application.
    """
    flask_app = create_app(make_services(live_backends))

    # Use port 0 to let the OS assign a free port
    sock = socket.socket()
    sock.bind(("", 0))
    port = sock.getsockname()[1]
    sock.close()

    def run_app() -> None:
        flask_app.run(
            host="127.0.0.1", port=port, debug=False, use_reloader=False
        )

    # Daemon threads terminate when the test process exits
    thread = threading.Thread(target=run_app, daemon=True)
    thread.start()

    url = f"http://127.0.0.1:{port}"
    max_retries = 20
    retry_delay = 0.1

    for _ in range(max_retries):
        try:
            response = requests.get(f"{url}/health", timeout=1)
            if response.status_code == 200:
                break
        except requests.exceptions.RequestException:
            # Server not ready yet, wait and retry
            time.sleep(retry_delay)
    else:
        raise RuntimeError(f"Flask server failed to start on {url}")

    return url
