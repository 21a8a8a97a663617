from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

from newsletter_delivery.domain.dto import OutgoingEmail
from newsletter_delivery.domain.errors import GatewayError

# Returns the error to raise for a send, or None to accept it.
FailureScript = Callable[[OutgoingEmail, int], GatewayError | None]


@dataclass
class StubMailGateway:
    """Records accepted messages; failures can be scripted per recipient."""

    sent: list[OutgoingEmail] = field(default_factory=list)
    calls: dict[str, int] = field(default_factory=dict)
    failures: dict[str, list[GatewayError]] = field(default_factory=dict)
    script: FailureScript | None = None

    def fail_next(self, to: str, *errors: GatewayError) -> None:
        self.failures.setdefault(to, []).extend(errors)

    async def send(self, *, to: str, subject: str, html: str, text: str) -> None:
        message = OutgoingEmail(to=to, subject=subject, html=html, text=text)
        call_number = self.calls.get(to, 0) + 1
        self.calls[to] = call_number

        queued = self.failures.get(to)
        if queued:
            raise queued.pop(0)
        if self.script is not None:
            error = self.script(message, call_number)
            if error is not None:
                raise error
        self.sent.append(message)

    def sent_to(self, to: str) -> list[OutgoingEmail]:
        return [message for message in self.sent if message.to == to]
