"""
main.py
-------
Entry point for the appointment ledger FastAPI application.
Sets up the ledger, the IVR dialog and the HTTP routes, and starts the server.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import Optional, Union

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

from appointment_service import AppointmentService, NotFoundError, ValidationError
from config import load_clean_config
from crypto_utils import PayloadCipher
from database import LedgerStore
from ledger import LedgerBusyError, LedgerChain
from models import create_appointment_input
from session_store import SessionStore
from transcription import transcribe_recording
from twilio_inbound_handler import IVRDialog, handle_answer, handle_incoming_call
from twilio_outbound_handler import trigger_call

# Configure logging at the top
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(name)s - %(message)s')
logger = logging.getLogger(__name__)

config = load_clean_config()

cipher = PayloadCipher(config["ENCRYPTION_SECRET"])
ledger_store = LedgerStore(config)
ledger = LedgerChain(
    ledger_store,
    cipher,
    lock_timeout=config["LEDGER_LOCK_TIMEOUT_SECONDS"],
    max_attempts=config["LEDGER_APPEND_RETRIES"],
)
appointment_service = AppointmentService(ledger, cipher, config["HOSPITAL_KEY"])
sessions = SessionStore(ttl_seconds=config["SESSION_TTL_SECONDS"])
dialog = IVRDialog(
    sessions,
    appointment_service,
    transcriber=partial(transcribe_recording, api_key=config["DEEPGRAM_API_KEY"]),
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    sessions.start_sweeper(config["SESSION_SWEEP_INTERVAL_SECONDS"])
    try:
        yield
    finally:
        sessions.stop_sweeper()


app = FastAPI(title="Appointment Ledger", lifespan=lifespan)


class AppointmentRequest(BaseModel):
    name: Optional[str] = None
    age: Optional[Union[int, str]] = None
    email: Optional[str] = None
    symptoms: Optional[str] = None
    doctor: Optional[str] = None
    mode: Optional[str] = None
    language: Optional[str] = None


class LookupRequest(BaseModel):
    appointment_id: Optional[str] = None
    hospital_key: Optional[str] = None


class CallRequest(BaseModel):
    phone: Optional[str] = None


def _error(status_code, message):
    return JSONResponse(status_code=status_code, content={"ok": False, "error": message})


@app.get("/", response_class=HTMLResponse)
async def root():
    logger.info("Root endpoint accessed")
    return "<html><body><h1>Appointment ledger is running!</h1></body></html>"


@app.post("/submit-appointment")
async def submit_appointment(body: AppointmentRequest):
    """Books an appointment submitted directly through the API."""
    appointment_input = create_appointment_input(**body.model_dump())
    try:
        result = await asyncio.to_thread(appointment_service.finalize, appointment_input)
    except ValidationError as e:
        return _error(400, str(e))
    except LedgerBusyError as e:
        logger.warning("Manual submission deferred: %s", str(e))
        return _error(503, "Ledger busy, please retry")
    except Exception as e:
        logger.error("Manual flow error: %s", str(e), exc_info=True)
        return _error(500, "Internal server error")
    return {"ok": True, **result}


@app.post("/get-appointment")
async def get_appointment(body: LookupRequest):
    """Returns a ledger record; sensitive fields need the hospital key."""
    try:
        view = await asyncio.to_thread(appointment_service.lookup, body.appointment_id, body.hospital_key)
    except ValidationError as e:
        return _error(400, str(e))
    except NotFoundError as e:
        return _error(404, str(e))
    except Exception as e:
        logger.error("getAppointment error: %s", str(e), exc_info=True)
        return _error(500, "Internal server error")
    return {"ok": True, **view}


@app.api_route("/voice", methods=["GET", "POST"])
async def voice(request: Request):
    """First webhook of a booking call."""
    logger.info("Voice entry route triggered")
    return await handle_incoming_call(request, dialog)


@app.post("/voice/answer")
async def voice_answer(request: Request):
    """<Gather> callback for each IVR question."""
    return await handle_answer(request, dialog)


@app.post("/trigger-call")
async def trigger_call_route(body: CallRequest):
    """Places an outbound call that runs the booking IVR."""
    if not body.phone:
        return _error(400, "Phone number required")
    try:
        result = await asyncio.to_thread(trigger_call, body.phone, config)
    except Exception as e:
        logger.error("Trigger call error: %s", str(e), exc_info=True)
        return _error(500, "Could not place call")
    return {"ok": True, **result}


@app.get("/verify-ledger")
async def verify_ledger(audit: bool = False):
    """Endpoint to verify ledger access and hash-chain integrity."""
    logger.info("Ledger verification endpoint triggered")
    access = await asyncio.to_thread(ledger_store.verify_database_access)
    if not (access["connection_success"] and access["table_exists"]):
        return {"success": False, "details": access}

    chain = await asyncio.to_thread(appointment_service.verify_ledger, audit)
    return {
        "success": chain["valid"],
        "details": {**access, "chain": chain},
    }


if __name__ == "__main__":
    logger.info("Starting FastAPI server on port %d", config["PORT"])
    uvicorn.run(app, host="0.0.0.0", port=config["PORT"])
