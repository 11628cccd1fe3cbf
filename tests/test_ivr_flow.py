import xml.etree.ElementTree as ET
import threading
import time
from urllib.parse import parse_qs, urlsplit

from conftest import HOSPITAL_KEY
from session_store import SessionStore
from transcription import TranscriptionError
from twilio_inbound_handler import IVRDialog


def _twiml(response):
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/xml")
    return ET.fromstring(response.content)


def _next_action(root):
    gather = root.find(".//Gather")
    assert gather is not None
    parts = urlsplit(gather.attrib["action"])
    query = {key: values[0] for key, values in parse_qs(parts.query).items()}
    return parts.path, query


def _spoken(root):
    return " ".join(say.text or "" for say in root.iter("Say"))


def _answer(client, call_sid, question, language="English", **form):
    return client.post(
        "/voice/answer",
        params={"question": question, "language": language},
        data={"CallSid": call_sid, **form},
    )


def _run_call(client, call_sid, email="Priya At Example Dot Com."):
    _twiml(client.post("/voice", data={"CallSid": call_sid}))
    _answer(client, call_sid, "language", Digits="2")
    _answer(client, call_sid, "name", "Hindi", SpeechResult="Priya Sharma,")
    _answer(client, call_sid, "age", "Hindi", SpeechResult="34.")
    _answer(client, call_sid, "email", "Hindi", SpeechResult=email)
    _answer(client, call_sid, "symptoms", "Hindi", SpeechResult="Headache and fever.")
    _answer(client, call_sid, "doctor", "Hindi", Digits="2")
    return _twiml(_answer(client, call_sid, "mode", "Hindi", Digits="1"))


def test_entry_asks_for_language(client):
    root = _twiml(client.post("/voice", data={"CallSid": "CA-entry"}))
    path, query = _next_action(root)
    assert path == "/voice/answer"
    assert query["question"] == "language"
    assert root.find(".//Gather").attrib["input"] == "dtmf"
    assert "Press 1 for English" in _spoken(root)


def test_language_selection_routes_to_name_in_that_language(client):
    client.post("/voice", data={"CallSid": "CA-lang"})
    root = _twiml(_answer(client, "CA-lang", "language", Digits="3"))

    assert "You selected Marathi" in _spoken(root)
    path, query = _next_action(root)
    assert query == {"question": "name", "language": "Marathi"}
    assert root.find(".//Gather").attrib["input"] == "speech"
    assert root.find(".//Gather/Say").attrib["language"] == "mr-IN"


def test_full_call_books_appointment_and_clears_session(client, app_module):
    root = _run_call(client, "CA-full")

    assert "You selected online" in _spoken(root)
    assert root.find(".//Gather") is None
    assert "CA-full" not in app_module.sessions

    records = app_module.ledger.records()
    assert len(records) == 1
    assert records[0]["name"] == "Priya Sharma"

    view = client.post(
        "/get-appointment",
        json={"appointment_id": records[0]["appointment_id"], "hospital_key": HOSPITAL_KEY},
    ).json()
    assert view["original_data"] == {
        "age": "34",
        "email": "priya@example.com",
        "symptoms": "Headache and fever",
        "doctor": "Dr. Kiran",
        "mode": "online",
        "language": "Hindi",
    }


def test_each_step_prompts_the_next_question(client):
    client.post("/voice", data={"CallSid": "CA-steps"})
    _answer(client, "CA-steps", "language", Digits="1")
    expected_next = {"name": "age", "age": "email", "email": "symptoms", "symptoms": "doctor"}
    for question, following in expected_next.items():
        root = _twiml(_answer(client, "CA-steps", question, SpeechResult="x"))
        assert _next_action(root)[1]["question"] == following

    root = _twiml(_answer(client, "CA-steps", "doctor", Digits="1"))
    assert "You selected Dr. Ravi" in _spoken(root)
    assert _next_action(root)[1]["question"] == "mode"


def test_empty_answer_still_advances(client, app_module):
    client.post("/voice", data={"CallSid": "CA-empty"})
    _answer(client, "CA-empty", "language", Digits="1")
    root = _twiml(_answer(client, "CA-empty", "name"))

    assert _next_action(root)[1]["question"] == "age"
    assert app_module.sessions.snapshot("CA-empty")["name"] == ""


def test_out_of_order_event_reprompts_expected_question(client, app_module):
    client.post("/voice", data={"CallSid": "CA-jump"})
    root = _twiml(_answer(client, "CA-jump", "email", SpeechResult="a at b dot c"))

    assert _next_action(root)[1]["question"] == "language"
    assert app_module.sessions.snapshot("CA-jump")["email"] is None


def test_replayed_answer_is_not_applied(client, app_module):
    client.post("/voice", data={"CallSid": "CA-replay"})
    _answer(client, "CA-replay", "language", Digits="1")
    _answer(client, "CA-replay", "name", SpeechResult="Priya")
    root = _twiml(_answer(client, "CA-replay", "name", SpeechResult="Mallory"))

    assert _next_action(root)[1]["question"] == "age"
    assert app_module.sessions.snapshot("CA-replay")["name"] == "Priya"


def test_failed_finalization_apologises_and_keeps_session(client, app_module):
    root = _run_call(client, "CA-fail", email="")

    assert "Sorry" in _spoken(root) or "क्षमा" in _spoken(root)
    assert "CA-fail" in app_module.sessions
    assert app_module.ledger.records() == []


def test_concurrent_calls_are_isolated(client, app_module):
    for call_sid in ("CA-a", "CA-b"):
        client.post("/voice", data={"CallSid": call_sid})
    _answer(client, "CA-a", "language", Digits="1")
    _answer(client, "CA-b", "language", Digits="2")
    _answer(client, "CA-a", "name", SpeechResult="Alice")
    _answer(client, "CA-b", "name", "Hindi", SpeechResult="Bharat")

    assert app_module.sessions.snapshot("CA-a")["name"] == "Alice"
    assert app_module.sessions.snapshot("CA-a")["language"] == "English"
    assert app_module.sessions.snapshot("CA-b")["name"] == "Bharat"
    assert app_module.sessions.snapshot("CA-b")["language"] == "Hindi"


def test_recording_is_transcribed(client, app_module, monkeypatch):
    calls = []

    def fake_transcriber(url, language_code):
        calls.append((url, language_code))
        return "Priya At Example Dot Com"

    monkeypatch.setattr(app_module.dialog, "transcriber", fake_transcriber)
    client.post("/voice", data={"CallSid": "CA-rec"})
    _answer(client, "CA-rec", "language", Digits="2")
    for question in ("name", "age"):
        _answer(client, "CA-rec", question, "Hindi", SpeechResult="x")
    _answer(client, "CA-rec", "email", "Hindi", RecordingUrl="https://api.twilio.com/rec/RE1")

    assert calls == [("https://api.twilio.com/rec/RE1", "hi-IN")]
    assert app_module.sessions.snapshot("CA-rec")["email"] == "priya@example.com"


def test_transcription_failure_is_treated_as_empty(client, app_module, monkeypatch):
    def broken_transcriber(url, language_code):
        raise TranscriptionError("provider down")

    monkeypatch.setattr(app_module.dialog, "transcriber", broken_transcriber)
    client.post("/voice", data={"CallSid": "CA-stt"})
    _answer(client, "CA-stt", "language", Digits="1")
    root = _twiml(_answer(client, "CA-stt", "name", RecordingUrl="https://api.twilio.com/rec/RE2"))

    assert _next_action(root)[1]["question"] == "age"
    assert app_module.sessions.snapshot("CA-stt")["name"] == ""


def test_new_event_after_finalization_starts_fresh(client, app_module):
    _run_call(client, "CA-again")
    root = _twiml(client.post("/voice", data={"CallSid": "CA-again"}))

    assert _next_action(root)[1]["question"] == "language"
    assert app_module.sessions.snapshot("CA-again")["name"] is None


def test_missing_call_sid_is_rejected(client):
    response = client.post("/voice/answer", params={"question": "name"}, data={"SpeechResult": "x"})
    assert response.status_code == 400


def test_duplicate_mode_events_book_once(service, ledger, monkeypatch):
    dialog = IVRDialog(SessionStore(), service)
    dialog.handle_answer("CA1", "language", digits="1")
    dialog.handle_answer("CA1", "name", speech_result="Priya Sharma")
    dialog.handle_answer("CA1", "age", speech_result="34")
    dialog.handle_answer("CA1", "email", speech_result="priya at example dot com")
    dialog.handle_answer("CA1", "symptoms", speech_result="Headache")
    dialog.handle_answer("CA1", "doctor", digits="1")

    finalize = service.finalize

    def slow_finalize(appointment_input):
        time.sleep(0.3)
        return finalize(appointment_input)

    monkeypatch.setattr(service, "finalize", slow_finalize)

    responses = []

    def press_mode():
        responses.append(str(dialog.handle_answer("CA1", "mode", digits="1")))

    first = threading.Thread(target=press_mode)
    second = threading.Thread(target=press_mode)
    first.start()
    time.sleep(0.05)
    second.start()
    first.join()
    second.join()

    assert len(ledger.records()) == 1
    assert len(responses) == 2
    # The late event finds a fresh session and is sent back to the language menu
    assert sum("Press 1 for English" in twiml for twiml in responses) == 1
