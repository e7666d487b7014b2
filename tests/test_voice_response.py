"""Tests for the TwiML documents returned to the voice webhook."""

import xml.etree.ElementTree as ET

from leadline.voice_response import intake_response, voicemail_response


def test_intake_streams_to_receptionist():
    root = ET.fromstring(intake_response("wss://rx.example.test/stream", "CA1", "user-1").encode())

    assert root.tag == "Response"
    stream = root.find("Connect/Stream")
    assert stream.get("url") == "wss://rx.example.test/stream"
    params = {p.get("name"): p.get("value") for p in stream.findall("Parameter")}
    assert params == {"callSid": "CA1", "userId": "user-1"}


def test_intake_without_owner_omits_user_parameter():
    root = ET.fromstring(intake_response("wss://rx.example.test/stream", "CA1", None).encode())
    names = [p.get("name") for p in root.findall("Connect/Stream/Parameter")]
    assert names == ["callSid"]


def test_voicemail_records_to_callback():
    root = ET.fromstring(voicemail_response("https://hooks.example.test/telephony/recording-complete", "Acme Plumbing", 90).encode())

    assert [child.tag for child in root] == ["Say", "Record", "Hangup"]
    assert "Acme Plumbing" in root.find("Say").text
    record = root.find("Record")
    assert record.get("action") == "https://hooks.example.test/telephony/recording-complete"
    assert record.get("method") == "POST"
    assert record.get("maxLength") == "90"
    assert record.get("playBeep") == "true"


def test_voicemail_greeting_without_business_name():
    root = ET.fromstring(voicemail_response("https://hooks.example.test/cb").encode())
    assert "reached us" in root.find("Say").text
