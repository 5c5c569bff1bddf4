"""Redirect forms and the redirector capability.

The last before-redirect step does not make a request: it produces a
:class:`RedirectForm` -- an auto-submitting form posting the resolved
parameters to the provider -- and hands it to a :class:`Redirector`.  How the
form reaches the user agent (an HTML page, an HTTP 302, a test double) is up
to the redirector, the engine only builds it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional
from urllib.parse import urlencode

from jinja2 import Environment

_env = Environment(autoescape=True)

_FORM_TEMPLATE = _env.from_string(
    """<!DOCTYPE html>
<html>
<body{% if auto_submit %} onload="document.forms[0].submit()"{% endif %}>
<form method="{{ method }}" action="{{ action }}">
{%- for name, value in fields.items() %}
<input type="hidden" name="{{ name }}" value="{{ value }}">
{%- endfor %}
<noscript><button type="submit">Continue</button></noscript>
</form>
</body>
</html>
"""
)


@dataclass(frozen=True)
class RedirectForm:
    """A form that sends the user agent to the provider.

    Attributes:
        method: ``"GET"`` or ``"POST"``.
        action: Target URL.
        fields: Hidden input name/value pairs.
    """

    method: str
    action: str
    fields: dict[str, str] = field(default_factory=dict)

    def to_url(self) -> str:
        """The equivalent GET URL (action plus form-encoded fields)."""
        if not self.fields:
            return self.action
        joiner = "&" if "?" in self.action else "?"
        return f"{self.action}{joiner}{urlencode(self.fields)}"

    def render_html(self, auto_submit: bool = True) -> str:
        """Render an HTML page containing the form, submitted on load."""
        return _FORM_TEMPLATE.render(
            method=self.method.upper(),
            action=self.action,
            fields=self.fields,
            auto_submit=auto_submit,
        )


def create_form(params: Mapping[str, Any], action: str, method: str) -> RedirectForm:
    """Build a :class:`RedirectForm` with every value stringified."""
    return RedirectForm(method=method.upper(), action=action, fields={k: str(v) for k, v in params.items()})


class Redirector(ABC):
    """Capability that delivers a redirect form to the user agent."""

    @abstractmethod
    def submit(self, form: RedirectForm, target: Any = None) -> None:
        """Send the user agent to ``form.action``.

        Args:
            form: The form to submit.
            target: Opaque attachment point supplied by the caller of the
                login handler (a response object, a page, ...).
        """
        ...


class CollectingRedirector(Redirector):
    """Redirector that only records the forms it is given.

    Useful on servers that turn :attr:`last` into their own response, and
    in tests.
    """

    def __init__(self) -> None:
        self.forms: list[RedirectForm] = []
        self.targets: list[Any] = []

    def submit(self, form: RedirectForm, target: Any = None) -> None:
        self.forms.append(form)
        self.targets.append(target)

    @property
    def last(self) -> Optional[RedirectForm]:
        return self.forms[-1] if self.forms else None
