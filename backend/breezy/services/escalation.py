from typing import Optional


def detect_transfer_request(text: str, transfer_keyword: Optional[str] = None) -> bool:
    t = text.lower()
    keywords = [
        "transfer",
        "a person",
        "a human",
        "real person",
        "representative",
        "operator",
        "speak to someone",
        "talk to someone",
        "manager",
    ]
    if transfer_keyword:
        keywords.append(transfer_keyword.lower())
    return any(k in t for k in keywords)


def detect_appointment_request(text: str) -> bool:
    t = text.lower()
    keywords = ["appointment", "schedule", "book", "reschedule", "available times", "come in"]
    return any(k in t for k in keywords)


def detect_goodbye(text: str) -> bool:
    t = text.lower()
    return any(k in t for k in ["bye", "goodbye", "that's all", "nothing else", "no thanks"])
