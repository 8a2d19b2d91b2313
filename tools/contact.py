# tools/contact.py
import re

from models.schemas import ContactKind, ResolvedContact

# Loose checks on purpose: user input like "(519) 555-0101" or "+1 519 555 0101" must pass
_PHONE_PUNCTUATION = re.compile(r"[()\s-]")
_PHONE_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
_EMAIL_PATTERN = re.compile(r"^\S+@\S+$")


def resolve_contact(raw) -> ResolvedContact:
    """
    Classify a raw contact string and clean it up for sending.

    Phone numbers (E.164-ish once punctuation is stripped) win over e-mail addresses.
    Anything else is UNKNOWN with an empty destination.
    """
    if not raw or not isinstance(raw, str):
        return ResolvedContact(ContactKind.UNKNOWN, "")

    phone = _PHONE_PUNCTUATION.sub("", raw)
    if _PHONE_PATTERN.match(phone):
        return ResolvedContact(ContactKind.SMS, phone)

    email = raw.strip()
    if _EMAIL_PATTERN.match(email):
        return ResolvedContact(ContactKind.EMAIL, email)

    return ResolvedContact(ContactKind.UNKNOWN, "")
