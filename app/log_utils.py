import logging
import re

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

_DIGIT_RUN = re.compile(r"\d{3,}")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def mask_digits(text: str) -> str:
    """Mask runs of 3+ digits, keeping the last two: 9876543210 -> ********10"""
    if not text:
        return ""
    return _DIGIT_RUN.sub(lambda m: "*" * (len(m.group()) - 2) + m.group()[-2:], text)
