from dataclasses import dataclass
import re

from credcheck.schemas import Outcome, RawPageState


@dataclass(frozen=True)
class BannerPatterns:
    password_expired: str
    locked: str
    invalid: str
    captcha_rejected: str


def _compile(fragment: str) -> re.Pattern[str]:
    return re.compile(re.escape(fragment).replace(r"\ ", r"\s+"), re.IGNORECASE)


class StatusClassifier:
    def __init__(self, patterns: BannerPatterns) -> None:
        # Banners can coexist on one page, so the first match in this order wins.
        self._ordered: list[tuple[re.Pattern[str], Outcome]] = [
            (_compile(patterns.password_expired), Outcome.PASSWORD_EXPIRED),
            (_compile(patterns.locked), Outcome.LOCKED),
            (_compile(patterns.invalid), Outcome.INVALID),
        ]
        self._captcha_rejected = _compile(patterns.captcha_rejected)

    def classify(self, state: RawPageState) -> Outcome:
        text = state.text or ""
        for pattern, outcome in self._ordered:
            if pattern.search(text):
                return outcome
        if state.has_post_login_marker and not self.is_captcha_rejected(state):
            return Outcome.VALID
        return Outcome.ERROR

    def is_captcha_rejected(self, state: RawPageState) -> bool:
        return bool(self._captcha_rejected.search(state.text or ""))

    def recognizes(self, state: RawPageState) -> bool:
        if state.has_post_login_marker or self.is_captcha_rejected(state):
            return True
        return any(pattern.search(state.text or "") for pattern, _ in self._ordered)
