"""
transcription.py
----------------
Transcribes Twilio call recordings with Deepgram's pre-recorded audio API.
"""

import logging

import requests

logger = logging.getLogger(__name__)

DEEPGRAM_LISTEN_URL = "https://api.deepgram.com/v1/listen"


class TranscriptionError(Exception):
    """The transcription provider failed or returned an unusable response."""


def transcribe_recording(recording_url: str, language_code: str, api_key: str, timeout: float = 15) -> str:
    """
    Sends a recording URL to Deepgram and returns the best transcript.

    Args:
        recording_url (str): Publicly reachable recording URL from Twilio.
        language_code (str): BCP-47 code such as 'hi-IN'; only the primary tag is sent.
        api_key (str): Deepgram API key.

    Returns:
        str: Transcript text, possibly empty.

    Raises:
        TranscriptionError: On HTTP failure or an unexpected response shape.
    """
    if not api_key:
        raise TranscriptionError("DEEPGRAM_API_KEY is not configured")

    try:
        response = requests.post(
            DEEPGRAM_LISTEN_URL,
            json={
                "url": recording_url,
                "language": language_code.split("-")[0],
                "punctuate": True,
                "model": "general",
            },
            headers={
                "Authorization": f"Token {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
        )
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        raise TranscriptionError(str(e)) from e

    try:
        transcript = data["results"]["channels"][0]["alternatives"][0].get("transcript") or ""
    except (KeyError, IndexError, TypeError) as e:
        raise TranscriptionError(f"unexpected Deepgram response: {e}") from e

    logger.info(f"Deepgram returned {len(transcript)} characters")
    return transcript
