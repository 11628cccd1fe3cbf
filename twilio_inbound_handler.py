"""
twilio_inbound_handler.py
-------------------------
IVR dialog for booking an appointment over the phone.

Twilio posts one request per answer. The question being answered travels in
the <Gather> action URL; the answers collected so far live in the session
store under the call's CallSid. The dialog asks, in order: language, name,
age, email, symptoms, doctor and consultation mode, then books the appointment.
"""

import asyncio
import logging
from urllib.parse import urlencode

from fastapi import HTTPException, Request
from fastapi.responses import HTMLResponse
from twilio.twiml.voice_response import VoiceResponse

from session_store import QUESTION_ORDER
from transcript import normalize
from transcription import TranscriptionError

logger = logging.getLogger(__name__)

ANSWER_PATH = "/voice/answer"

DEFAULT_LANGUAGE = "English"

LANGUAGE_CODES = {"English": "en-US", "Hindi": "hi-IN", "Marathi": "mr-IN"}

LANGUAGE_DIGITS = {"1": "English", "2": "Hindi", "3": "Marathi"}
DOCTOR_DIGITS = {"1": "Dr. Ravi", "2": "Dr. Kiran"}
MODE_DIGITS = {"1": "online", "2": "offline"}

SPEECH_QUESTIONS = ("name", "age", "email", "symptoms")

# Answers that should not be written to the logs verbatim
SENSITIVE_QUESTIONS = ("age", "email", "symptoms")

LANGUAGE_MENU = "Press 1 for English. Press 2 for Hindi. Press 3 for Marathi."

QUESTION_TEXTS = {
    "name": {
        "English": "Please say your full name",
        "Hindi": "कृपया अपना पूरा नाम बताएं",
        "Marathi": "कृपया आपले पूर्ण नाव सांगा",
    },
    "age": {
        "English": "Please say your age",
        "Hindi": "कृपया अपनी आयु बताएं",
        "Marathi": "कृपया आपले वय सांगा",
    },
    "email": {
        "English": "Please say your email address",
        "Hindi": "कृपया अपना ईमेल पता बताएं",
        "Marathi": "कृपया आपला ईमेल पत्ता सांगा",
    },
    "symptoms": {
        "English": "Please describe your symptoms",
        "Hindi": "कृपया अपने लक्षण बताएं",
        "Marathi": "कृपया आपले लक्षण सांगा",
    },
    "doctor": {
        "English": "Press 1 for Dr. Ravi. Press 2 for Dr. Kiran.",
        "Hindi": "डॉ. रवि के लिए 1 दबाएँ। डॉ. किरण के लिए 2 दबाएँ।",
        "Marathi": "डॉ. रवी साठी 1 दाबा. डॉ. किरण साठी 2 दाबा.",
    },
    "mode": {
        "English": "Press 1 for Online. Press 2 for Offline.",
        "Hindi": "ऑनलाइन के लिए 1 दबाएँ। ऑफ़लाइन के लिए 2 दबाएँ।",
        "Marathi": "ऑनलाइन साठी 1 दाबा. ऑफलाइन साठी 2 दाबा.",
    },
    "thank": {
        "English": "Thank you! Your appointment is recorded.",
        "Hindi": "धन्यवाद! आपकी अपॉइंटमेंट रिकॉर्ड हो गई है।",
        "Marathi": "धन्यवाद! आपली अपॉइंटमेंट नोंदवली गेली आहे.",
    },
    "sorry": {
        "English": "Sorry, an error occurred while saving your appointment.",
        "Hindi": "क्षमा करें, आपकी अपॉइंटमेंट सहेजते समय एक त्रुटि हुई।",
        "Marathi": "क्षमस्व, आपली अपॉइंटमेंट जतन करताना त्रुटी आली.",
    },
}


def get_language_code(language):
    return LANGUAGE_CODES.get(language, LANGUAGE_CODES[DEFAULT_LANGUAGE])


def get_question_text(question, language):
    texts = QUESTION_TEXTS[question]
    return texts.get(language, texts[DEFAULT_LANGUAGE])


def next_question(question):
    index = QUESTION_ORDER.index(question)
    if index + 1 < len(QUESTION_ORDER):
        return QUESTION_ORDER[index + 1]
    return None


def answer_url(question, language):
    return f"{ANSWER_PATH}?{urlencode({'question': question, 'language': language})}"


class IVRDialog:
    """
    State machine for the booking call.

    Empty or missing answers are stored as-is and the dialog moves on; there
    is no re-prompt loop. An event whose question does not match the next
    unanswered question is not applied and the expected question is asked again.
    """

    def __init__(self, sessions, appointment_service, transcriber=None):
        self.sessions = sessions
        self.appointment_service = appointment_service
        self.transcriber = transcriber

    # ------------------------------------------------------------------
    # Prompts
    # ------------------------------------------------------------------

    def _gather(self, response, question, language):
        lang_code = get_language_code(language)
        if question == "language":
            gather = response.gather(input="dtmf", num_digits=1, action=answer_url("language", DEFAULT_LANGUAGE))
            gather.say(LANGUAGE_MENU)
        elif question in SPEECH_QUESTIONS:
            gather = response.gather(input="speech", action=answer_url(question, language), speech_timeout="auto")
            gather.say(get_question_text(question, language), language=lang_code)
        else:
            gather = response.gather(input="dtmf", num_digits=1, action=answer_url(question, language))
            gather.say(get_question_text(question, language), language=lang_code)
        return response

    def prompt_for(self, question, language):
        return self._gather(VoiceResponse(), question, language)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def start_call(self, call_sid):
        """Entry point of a call: ask whatever the session still needs, normally the language."""
        with self.sessions.locked(call_sid) as session:
            expected = session.expected_question() or "mode"
            language = session.language or DEFAULT_LANGUAGE
        logger.info(f"Call {call_sid} entered the IVR at question '{expected}'")
        return self.prompt_for(expected, language)

    def _transcribe(self, call_sid, language, speech_result, recording_url):
        if recording_url and self.transcriber is not None:
            try:
                return self.transcriber(recording_url, get_language_code(language))
            except TranscriptionError as e:
                logger.error(f"Transcription failed for call {call_sid}: {e}")
                return ""
        return speech_result or ""

    def handle_answer(self, call_sid, question, language=None, digits=None, speech_result=None, recording_url=None):
        """
        Applies one answer event and returns the TwiML for the next step.

        Args:
            call_sid (str): Twilio CallSid.
            question (str): The question this event answers, from the action URL.
            language (str): Language from the action URL; the session's own value wins.
            digits (str): DTMF digit for menu questions.
            speech_result (str): Twilio's speech transcript for speech questions.
            recording_url (str): Recording to transcribe instead of speech_result.

        Returns:
            VoiceResponse: Next prompt, confirmation or apology.
        """
        # One step per call at a time: a duplicate event waits, then sees the
        # answers (or the drained session) left by the first one
        with self.sessions.locked(call_sid):
            return self._apply_answer(call_sid, question, language, digits, speech_result, recording_url)

    def _apply_answer(self, call_sid, question, language, digits, speech_result, recording_url):
        expected = self.sessions.expected_question(call_sid)
        session_language = self.sessions.snapshot(call_sid)["language"]
        language = session_language or language or DEFAULT_LANGUAGE
        if language not in LANGUAGE_CODES:
            language = DEFAULT_LANGUAGE

        # Once every answer is in, only a repeated final answer is accepted
        in_order = question == expected or (expected is None and question == "mode")
        if not in_order:
            logger.warning(
                f"Out-of-order event for call {call_sid}: got '{question}', expected '{expected}'"
            )
            return self.prompt_for(expected or "mode", language)

        lang_code = get_language_code(language)

        if question == "language":
            language = LANGUAGE_DIGITS.get(digits, DEFAULT_LANGUAGE)
            self.sessions.set_language(call_sid, language)
            logger.info(f"Call {call_sid} selected {language}")
            response = VoiceResponse()
            response.say(f"You selected {language}", language=get_language_code(language))
            return self._gather(response, "name", language)

        if question in SPEECH_QUESTIONS:
            transcript = self._transcribe(call_sid, language, speech_result, recording_url)
            answer = normalize(question, transcript)
            self.sessions.set_answer(call_sid, question, answer)
            if question in SENSITIVE_QUESTIONS:
                logger.info(f"Collected [{question}] for call {call_sid} ({len(answer)} chars)")
            else:
                logger.info(f"Collected [{question}] = {answer} for call {call_sid}")
            return self.prompt_for(next_question(question), language)

        if question == "doctor":
            doctor = DOCTOR_DIGITS.get(digits, DOCTOR_DIGITS["1"])
            self.sessions.set_answer(call_sid, "doctor", doctor)
            logger.info(f"Doctor selected for call {call_sid}: {doctor}")
            response = VoiceResponse()
            response.say(f"You selected {doctor}", language=lang_code)
            return self._gather(response, "mode", language)

        mode = MODE_DIGITS.get(digits, MODE_DIGITS["1"])
        self.sessions.set_answer(call_sid, "mode", mode)
        return self._finalize(call_sid, mode, language)

    def _finalize(self, call_sid, mode, language):
        lang_code = get_language_code(language)
        appointment_input = self.sessions.snapshot(call_sid)
        response = VoiceResponse()
        try:
            result = self.appointment_service.finalize(appointment_input)
        except Exception as e:
            # Session stays in place; the sweeper evicts it if the caller hangs up
            logger.error(f"Error saving appointment from call {call_sid}: {e}", exc_info=True)
            response.say(get_question_text("sorry", language), language=lang_code)
            return response

        self.sessions.drain(call_sid)
        logger.info(f"Appointment {result['id']} stored from call {call_sid}")
        response.say(f"You selected {mode}. {get_question_text('thank', language)}", language=lang_code)
        return response


def _twiml(response):
    return HTMLResponse(content=str(response), media_type="application/xml")


async def _call_sid(request: Request):
    form = await request.form()
    call_sid = form.get("CallSid")
    if not call_sid:
        logger.error("Voice webhook without CallSid from %s", request.client.host if request.client else "unknown")
        raise HTTPException(status_code=400, detail="CallSid is required")
    return call_sid, form


async def handle_incoming_call(request: Request, dialog: IVRDialog):
    """Handles the first webhook of a call and returns the language menu."""
    call_sid, _ = await _call_sid(request)
    logger.info("Received call %s", call_sid)
    return _twiml(dialog.start_call(call_sid))


async def handle_answer(request: Request, dialog: IVRDialog):
    """Handles a <Gather> callback for the question named in the query string."""
    call_sid, form = await _call_sid(request)
    response = await asyncio.to_thread(
        dialog.handle_answer,
        call_sid,
        request.query_params.get("question"),
        request.query_params.get("language"),
        digits=form.get("Digits"),
        speech_result=form.get("SpeechResult"),
        recording_url=form.get("RecordingUrl"),
    )
    return _twiml(response)
