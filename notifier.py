import os
import smtplib
import time
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import TYPE_CHECKING, Callable, Dict, Iterable, Optional

from dotenv import load_dotenv

from log_utils import setup_logger

if TYPE_CHECKING:  # pragma: no cover
    from signal_engine import AnalysisResult

load_dotenv()

EMAIL_ADDRESS = os.getenv("EMAIL_ADDRESS")
EMAIL_PASSWORD = os.getenv("EMAIL_PASSWORD")
EMAIL_RECEIVER = os.getenv("EMAIL_RECEIVER")
SMTP_SERVER = os.getenv("SMTP_SERVER", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))

__all__ = ["SignalNotifier", "default_sender", "format_alert", "log_alert", "send_email_alert"]

logger = setup_logger(__name__)

Sender = Callable[[str, str], None]


def _format_number(value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    number = float(value)
    if abs(number) >= 100:
        formatted = f"{number:,.2f}"
    elif abs(number) >= 1:
        formatted = f"{number:,.4f}"
    else:
        formatted = f"{number:,.8f}"
    return formatted.rstrip("0").rstrip(".") if "." in formatted else formatted


def _format_pct(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{value:.2f}%"


def format_alert(result: "AnalysisResult") -> str:
    """Plain-text alert body for a non-neutral analysis result."""

    plan = result.price_plan
    ratio = plan.risk_reward
    lines = [
        f"{result.symbol} {result.directive.value.upper()} signal",
        f"Current price: {_format_number(result.current_price)}",
        f"Entry: {_format_number(plan.entry_price)}",
        f"Optimal entry: {_format_number(plan.optimal_entry_price)}",
        f"Stop loss: {_format_number(plan.stop_loss)} ({_format_pct(plan.risk_pct)})",
        f"Take profit: {_format_number(plan.take_profit)} ({_format_pct(plan.reward_pct)})",
        f"R:R: {'n/a' if ratio is None else f'1:{ratio:.2f}'}",
    ]
    if result.fusion_rule:
        lines.append(f"Rule: {result.fusion_rule}")
    return "\n".join(lines)


def send_email_alert(subject: str, body: str) -> None:
    """Deliver ``body`` by e-mail using the configured SMTP account."""

    if not (EMAIL_ADDRESS and EMAIL_PASSWORD and EMAIL_RECEIVER):
        logger.warning("Email credentials missing; alert not sent: %s", subject)
        return
    html = "<br>".join(escape(line) for line in body.splitlines())
    msg = MIMEMultipart()
    msg['From'] = EMAIL_ADDRESS
    msg['To'] = EMAIL_RECEIVER
    msg['Subject'] = subject
    msg.attach(MIMEText(body, "plain"))
    msg.attach(MIMEText(f"<html><body style=\"font-family: monospace;\">{html}</body></html>", "html"))

    server = smtplib.SMTP(SMTP_SERVER, SMTP_PORT)
    try:
        server.starttls()
        server.login(EMAIL_ADDRESS, EMAIL_PASSWORD)
        server.send_message(msg)
    finally:
        server.quit()
    logger.info("Alert email sent: %s", subject)


def log_alert(subject: str, body: str) -> None:
    logger.info("%s\n%s", subject, body)


def default_sender() -> Sender:
    """E-mail when credentials are configured, otherwise the log."""

    if EMAIL_ADDRESS and EMAIL_PASSWORD and EMAIL_RECEIVER:
        return send_email_alert
    return log_alert


class SignalNotifier:
    """Forward actionable results to a sender with a per-symbol cooldown."""

    def __init__(
        self,
        signals: Iterable[str] = ("long", "short"),
        cooldown: float = 3600.0,
        sender: Optional[Sender] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.signals = {s.lower() for s in signals}
        self.cooldown = float(cooldown)
        self.sender = sender or default_sender()
        self._clock = clock
        self._last_sent: Dict[str, float] = {}

    def should_notify(self, symbol: str, directive: str) -> bool:
        if directive.lower() not in self.signals:
            return False
        last = self._last_sent.get(symbol)
        return last is None or self._clock() - last >= self.cooldown

    def notify(self, result: "AnalysisResult") -> bool:
        """Send an alert for ``result`` unless filtered or cooling down."""

        directive = result.directive.value
        if not self.should_notify(result.symbol, directive):
            return False
        subject = f"{result.symbol} {directive.upper()} signal"
        try:
            self.sender(subject, format_alert(result))
        except Exception as e:
            logger.error("Alert delivery failed: %s", e, exc_info=True)
            return False
        self._last_sent[result.symbol] = self._clock()
        return True

    def reset(self, symbol: Optional[str] = None) -> None:
        if symbol is None:
            self._last_sent.clear()
        else:
            self._last_sent.pop(symbol, None)

