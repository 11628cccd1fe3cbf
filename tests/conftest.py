import importlib
import random
import sys
from datetime import datetime
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from appointment_service import CLINIC_TZ, AppointmentService  # noqa: E402
from crypto_utils import PayloadCipher  # noqa: E402
from database import LedgerStore  # noqa: E402
from ledger import LedgerChain  # noqa: E402

HOSPITAL_KEY = "hospital-key-123"


@pytest.fixture
def app_module(tmp_path, monkeypatch):
    monkeypatch.setenv("LEDGER_BACKEND", "sqlite")
    monkeypatch.setenv("LEDGER_DB_PATH", str(tmp_path / "ledger-test.sqlite"))
    monkeypatch.setenv("ENCRYPTION_SECRET", "test-encryption-secret")
    monkeypatch.setenv("HOSPITAL_KEY", HOSPITAL_KEY)
    monkeypatch.setenv("SERVER_URL", "https://clinic.example.test")
    monkeypatch.setenv("DEEPGRAM_API_KEY", "dg-test")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(app_module):
    with TestClient(app_module.app) as test_client:
        yield test_client


@pytest.fixture
def cipher():
    return PayloadCipher("unit-test-secret")


@pytest.fixture
def ledger_store(tmp_path):
    return LedgerStore({"LEDGER_BACKEND": "sqlite", "LEDGER_DB_PATH": str(tmp_path / "ledger.sqlite")})


@pytest.fixture
def ledger(ledger_store, cipher):
    return LedgerChain(ledger_store, cipher, lock_timeout=5.0, max_attempts=3)


@pytest.fixture
def fixed_now():
    return datetime(2026, 10, 19, 8, 30, tzinfo=CLINIC_TZ)


@pytest.fixture
def service(ledger, cipher, fixed_now):
    return AppointmentService(
        ledger,
        cipher,
        HOSPITAL_KEY,
        clock=lambda: fixed_now,
        rng=random.Random(7),
    )


@pytest.fixture
def appointment():
    return {
        "name": "Priya Sharma",
        "age": "34",
        "email": "priya@example.com",
        "symptoms": "Headache and fever",
        "doctor": "Dr. Kiran",
        "mode": "online",
        "language": "English",
    }
