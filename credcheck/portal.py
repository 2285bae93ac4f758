from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
import logging
import time

from playwright.sync_api import Browser, BrowserContext, Page, Playwright, sync_playwright
from playwright.sync_api import Error as PlaywrightError

from credcheck.captcha import CaptchaError, CaptchaSolver, TesseractEngine
from credcheck.classifier import BannerPatterns, StatusClassifier
from credcheck.config import Settings
from credcheck.schemas import CredentialData, Outcome, RawPageState


logger = logging.getLogger(__name__)

CAPTCHA_RECAPTURE_DELAY_MS = 1000
IDENTIFIER_CHECK_SETTLE_MS = 500
RESULT_POLL_INTERVAL_MS = 250


class PortalError(RuntimeError):
    pass


class NoCredential(PortalError):
    pass


class NavigationError(PortalError):
    pass


class LoginTimeout(NavigationError):
    pass


class CaptchaExhausted(PortalError):
    pass


class UnrecognizedPageState(PortalError):
    pass


class BrowserUnavailable(PortalError):
    pass


RETRYABLE_ERRORS: tuple[type[Exception], ...] = (
    NavigationError,
    CaptchaExhausted,
    UnrecognizedPageState,
    PlaywrightError,
)


@dataclass(frozen=True)
class PortalProfile:
    name: str
    login_url: str
    identifier_selector: str
    identifier_check_script: str
    secret_selector: str
    captcha_image_selector: str
    captcha_answer_selector: str
    submit_selector: str
    post_login_selector: str
    logout_script: str
    banners: BannerPatterns


KRA_ITAX = PortalProfile(
    name="KRA",
    login_url="https://itax.kra.go.ke/KRA-Portal/",
    identifier_selector="#logid",
    identifier_check_script="() => { if (typeof CheckPIN === 'function') { CheckPIN(); } }",
    secret_selector='input[name="xxZTT9p2wQ"]',
    captcha_image_selector="#captcha_img",
    captcha_answer_selector="#captcahText",
    submit_selector="#loginButton",
    post_login_selector="#ddtopmenubar",
    logout_script="() => { if (typeof logOutUser === 'function') { logOutUser(); } }",
    banners=BannerPatterns(
        password_expired="PASSWORD HAS EXPIRED",
        locked="account has been locked",
        invalid="Invalid Login",
        captcha_rejected="Wrong result",
    ),
)


def _same_page(state: RawPageState, other: RawPageState) -> bool:
    return state.text == other.text and state.has_post_login_marker == other.has_post_login_marker


class PortalSession:
    def __init__(
        self,
        page: Page,
        profile: PortalProfile,
        solver: CaptchaSolver,
        classifier: StatusClassifier,
        *,
        captcha_max_attempts: int = 5,
        result_wait_ms: int = 5000,
        login_timeout_seconds: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.page = page
        self.profile = profile
        self.solver = solver
        self.classifier = classifier
        self.captcha_max_attempts = captcha_max_attempts
        self.result_wait_ms = result_wait_ms
        self.login_timeout_seconds = login_timeout_seconds
        self._clock = clock
        self._deadline = float("inf")

    def attempt_login(self, credential: CredentialData) -> RawPageState:
        if not credential.has_identifier or not credential.has_secret:
            raise NoCredential(f"credential {credential.id} has no identifier or secret")

        self._deadline = self._clock() + self.login_timeout_seconds
        self._fill_form(credential)

        for captcha_round in range(1, self.captcha_max_attempts + 1):
            image_bytes = self._capture_captcha()
            try:
                answer = self.solver.solve(image_bytes)
            except CaptchaError as exc:
                logger.info(
                    "captcha unreadable, capturing again",
                    extra={"credential_id": credential.id, "captcha_round": captcha_round, "reason": str(exc)},
                )
                with self._step("captcha recapture delay"):
                    self.page.wait_for_timeout(CAPTCHA_RECAPTURE_DELAY_MS)
                continue

            before_submit = self._snapshot()
            self._submit(answer)
            state = self._await_result(before_submit)
            if self.classifier.is_captcha_rejected(state):
                logger.info(
                    "portal rejected captcha answer",
                    extra={"credential_id": credential.id, "captcha_round": captcha_round},
                )
                self._refill_secret(credential)
                continue
            return state

        raise CaptchaExhausted(
            f"captcha not accepted after {self.captcha_max_attempts} attempts for credential {credential.id}"
        )

    def logout(self) -> bool:
        try:
            self.page.evaluate(self.profile.logout_script)
        except PlaywrightError as exc:
            logger.warning("portal logout failed", extra={"portal": self.profile.name, "reason": str(exc)})
            return False
        return True

    @contextmanager
    def _step(self, name: str) -> Iterator[None]:
        if self._clock() > self._deadline:
            raise LoginTimeout(f"login attempt exceeded {self.login_timeout_seconds}s before '{name}'")
        try:
            yield
        except PlaywrightError as exc:
            raise NavigationError(f"{name} failed: {exc}") from exc

    def _fill_form(self, credential: CredentialData) -> None:
        with self._step("open login page"):
            self.page.goto(self.profile.login_url)
        with self._step("fill identifier"):
            self.page.wait_for_selector(self.profile.identifier_selector)
            self.page.fill(self.profile.identifier_selector, (credential.identifier or "").strip())
            # The portal validates the identifier over AJAX before accepting a password.
            self.page.evaluate(self.profile.identifier_check_script)
        with self._step("fill secret"):
            self.page.fill(self.profile.secret_selector, credential.secret or "")
            self.page.wait_for_timeout(IDENTIFIER_CHECK_SETTLE_MS)

    def _refill_secret(self, credential: CredentialData) -> None:
        with self._step("refill secret"):
            if self.page.query_selector(self.profile.secret_selector) is not None:
                self.page.fill(self.profile.secret_selector, credential.secret or "")

    def _capture_captcha(self) -> bytes:
        with self._step("capture captcha"):
            image = self.page.wait_for_selector(self.profile.captcha_image_selector)
            if image is None:
                raise NavigationError("captcha image did not render")
            return image.screenshot()

    def _submit(self, answer: int) -> None:
        with self._step("submit login"):
            self.page.fill(self.profile.captcha_answer_selector, str(answer))
            self.page.click(self.profile.submit_selector)

    def _await_result(self, before_submit: RawPageState) -> RawPageState:
        wait_until = self._clock() + self.result_wait_ms / 1000
        while True:
            state = self._snapshot()
            # Until the form POST lands, the previous page and its banner are still showing.
            if not _same_page(state, before_submit) and self.classifier.recognizes(state):
                return state
            if self._clock() >= wait_until:
                return replace(state, timed_out=True)
            with self._step("wait for login result"):
                self.page.wait_for_timeout(RESULT_POLL_INTERVAL_MS)

    def _snapshot(self) -> RawPageState:
        # The page may be mid-navigation; an unreadable page just means "not settled yet".
        try:
            text = self.page.inner_text("body")
        except PlaywrightError:
            text = ""
        try:
            has_marker = self.page.query_selector(self.profile.post_login_selector) is not None
        except PlaywrightError:
            has_marker = False
        return RawPageState(url=self.page.url, text=text, has_post_login_marker=has_marker)


class PortalChecker:
    """Owns the browser for one batch and checks one credential per fresh page."""

    def __init__(
        self,
        settings: Settings,
        profile: PortalProfile = KRA_ITAX,
        *,
        solver_factory: Callable[[], CaptchaSolver] | None = None,
        classifier: StatusClassifier | None = None,
    ) -> None:
        self.settings = settings
        self.profile = replace(profile, login_url=settings.portal_url) if settings.portal_url else profile
        self.classifier = classifier or StatusClassifier(self.profile.banners)
        self._solver_factory = solver_factory or (
            lambda: CaptchaSolver(TesseractEngine(tesseract_cmd=settings.tesseract_cmd))
        )
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None

    def check(self, credential: CredentialData) -> Outcome:
        context = self._new_context()
        try:
            page = context.new_page()
            page.set_default_timeout(self.settings.step_timeout_ms)
            with self._solver_factory() as solver:
                session = PortalSession(
                    page,
                    self.profile,
                    solver,
                    self.classifier,
                    captcha_max_attempts=self.settings.captcha_max_attempts,
                    result_wait_ms=self.settings.result_wait_ms,
                    login_timeout_seconds=self.settings.login_timeout_seconds,
                )
                state = session.attempt_login(credential)
                outcome = self.classifier.classify(state)
                if outcome is Outcome.VALID:
                    session.logout()
        finally:
            self._close_context(context)

        if outcome is Outcome.ERROR:
            raise UnrecognizedPageState(f"unrecognized page at {state.url} (timed_out={state.timed_out})")
        return outcome

    def close(self) -> None:
        if self._browser is not None:
            try:
                self._browser.close()
            except PlaywrightError:
                logger.debug("browser close failed", exc_info=True)
            self._browser = None
        if self._playwright is not None:
            self._playwright.stop()
            self._playwright = None

    def __enter__(self) -> "PortalChecker":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _new_context(self) -> BrowserContext:
        if self._browser is None:
            self._browser = self._launch()
        return self._browser.new_context()

    def _launch(self) -> Browser:
        if self._playwright is None:
            self._playwright = sync_playwright().start()

        for channel in self.settings.browser_channels:
            try:
                browser = self._playwright.chromium.launch(
                    headless=self.settings.headless,
                    channel=None if channel == "chromium" else channel,
                )
            except PlaywrightError as exc:
                logger.warning("browser launch failed", extra={"channel": channel, "reason": str(exc)})
                continue
            logger.info("browser launched", extra={"channel": channel, "headless": self.settings.headless})
            return browser

        raise BrowserUnavailable(f"no browser could be launched from channels {self.settings.browser_channels}")

    def _close_context(self, context: BrowserContext) -> None:
        try:
            context.close()
        except PlaywrightError:
            logger.debug("browser context close failed", exc_info=True)
