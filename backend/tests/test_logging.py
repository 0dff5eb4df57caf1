from __future__ import annotations

from observability.logging import PIIRedactor


def test_redactor_masks_sensitive_keys_and_inline_contact_details():
    redactor = PIIRedactor()

    event = redactor(
        None,
        "info",
        {
            "event": "email_sent",
            "recipient": "alice@example.com",
            "latitude": 40.44,
            "error": "bounce from alice@example.com, call +1 412 555 0100",
            "details": {"authorization": "Bearer alice", "tool_name": "sendFollowUpEmailNow"},
        },
    )

    assert event["recipient"] == "[REDACTED]"
    assert event["latitude"] == "[REDACTED]"
    assert event["error"] == "bounce from [EMAIL], call [PHONE]"
    assert event["details"] == {"authorization": "[REDACTED]", "tool_name": "sendFollowUpEmailNow"}
    assert event["event"] == "email_sent"
