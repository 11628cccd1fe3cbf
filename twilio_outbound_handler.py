"""
twilio_outbound_handler.py
--------------------------
Starts outbound booking calls. Twilio fetches the IVR's entry TwiML from
SERVER_URL/voice once the patient picks up.
"""

import logging

from twilio.rest import Client

logger = logging.getLogger(__name__)

_twilio_client = None


def get_twilio_client(config):
    global _twilio_client
    if _twilio_client is None:
        if not config.get("TWILIO_ACCOUNT_SID") or not config.get("TWILIO_AUTH_TOKEN"):
            raise ValueError("TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN must be configured to place calls")
        _twilio_client = Client(config["TWILIO_ACCOUNT_SID"], config["TWILIO_AUTH_TOKEN"])
    return _twilio_client


def trigger_call(phone, config):
    """
    Places a call to the patient that runs the booking IVR.

    Args:
        phone (str): Patient phone number in E.164 format.
        config (dict): Output of config.load_clean_config.

    Returns:
        dict: Call status and Twilio call SID.
    """
    server_url = config.get("SERVER_URL")
    if not server_url:
        logger.error("FATAL: SERVER_URL environment variable not set or not loaded correctly from .env!")
        raise ValueError("SERVER_URL is not configured. Cannot create call URL.")

    logger.info("Calling from %s to %s", config["TWILIO_PHONE_NUMBER"], phone)
    call_twiml_url = f"{server_url}/voice"
    call = get_twilio_client(config).calls.create(
        url=call_twiml_url,
        to=phone,
        from_=config["TWILIO_PHONE_NUMBER"],
    )
    logger.info("Initiated outbound call (%s) pointing to TwiML URL: %s", call.sid, call_twiml_url)
    return {"status": "Call initiated!", "call_sid": call.sid}
