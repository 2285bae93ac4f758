from dataclasses import dataclass
import io
import logging
import re
from typing import Protocol

from PIL import Image
import pytesseract


logger = logging.getLogger(__name__)

# Recognizer output always ends with a line break and a form feed.
TRAILING_NOISE_CHARS = 2
# Single text line, digits and the two supported operators only.
TESSERACT_CONFIG = "--psm 7 -c tessedit_char_whitelist=0123456789+-=?"

_DIGIT_RUN = re.compile(r"\d+")


class CaptchaError(ValueError):
    pass


class UnrecognizableOperands(CaptchaError):
    pass


class UnsupportedOperator(CaptchaError):
    pass


class OcrEngine(Protocol):
    def recognize(self, image_bytes: bytes) -> str: ...

    def close(self) -> None: ...


class TesseractEngine:
    def __init__(self, *, tesseract_cmd: str | None = None, config: str = TESSERACT_CONFIG) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.config = config

    def recognize(self, image_bytes: bytes) -> str:
        with Image.open(io.BytesIO(image_bytes)) as image:
            return pytesseract.image_to_string(image.convert("L"), lang="eng", config=self.config)

    def close(self) -> None:
        # Tesseract runs as a subprocess per call; nothing stays resident.
        pass


@dataclass(frozen=True)
class CaptchaChallenge:
    image_bytes: bytes
    raw_text: str
    operator: str
    operands: tuple[int, int]

    @property
    def answer(self) -> int:
        left, right = self.operands
        return left + right if self.operator == "+" else left - right


def parse_expression(raw_text: str) -> tuple[str, tuple[int, int]]:
    text = raw_text[:-TRAILING_NOISE_CHARS] if len(raw_text) > TRAILING_NOISE_CHARS else ""

    numbers = _DIGIT_RUN.findall(text)
    if len(numbers) < 2:
        raise UnrecognizableOperands(f"expected two operands in captcha text {text!r}")

    if "+" in text:
        operator = "+"
    elif "-" in text:
        operator = "-"
    else:
        raise UnsupportedOperator(f"no supported operator in captcha text {text!r}")

    return operator, (int(numbers[0]), int(numbers[1]))


class CaptchaSolver:
    def __init__(self, engine: OcrEngine) -> None:
        self.engine = engine

    def read(self, image_bytes: bytes) -> CaptchaChallenge:
        raw_text = self.engine.recognize(image_bytes)
        operator, operands = parse_expression(raw_text)
        challenge = CaptchaChallenge(
            image_bytes=image_bytes,
            raw_text=raw_text,
            operator=operator,
            operands=operands,
        )
        logger.debug(
            "captcha recognized",
            extra={"raw_text": raw_text, "operator": operator, "operands": operands},
        )
        return challenge

    def solve(self, image_bytes: bytes) -> int:
        return self.read(image_bytes).answer

    def close(self) -> None:
        self.engine.close()

    def __enter__(self) -> "CaptchaSolver":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
