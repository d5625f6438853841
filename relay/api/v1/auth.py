import html
import logging
from typing import Optional

from fastapi import APIRouter
from fastapi.responses import HTMLResponse, RedirectResponse

from relay.api.deps import HandshakeDep
from relay.domain.errors import RelayError, InvalidState, ProviderError, UnknownTagError
from relay.domain.states import Platform

logger = logging.getLogger(__name__)

router = APIRouter()

_PAGE = """
<html>
  <body style="font-family: sans-serif; text-align: center; padding: 50px;">
    <h1 style="color: {color};">{title}</h1>
    {body}
  </body>
</html>
"""

_RED = "#e74c3c"
_GREEN = "#27ae60"


def _page(title: str, lines: list[str], status_code: int, color: str = _RED, script: str = "") -> HTMLResponse:
    body = "\n    ".join(f"<p>{html.escape(line)}</p>" for line in lines)
    if script:
        body += f"\n    <script>{script}</script>"
    return HTMLResponse(_PAGE.format(color=color, title=html.escape(title), body=body), status_code=status_code)


@router.get("/{platform}/start")
async def oauth_start(platform: str, handshake: HandshakeDep, user_id: str = "local"):
    """Issues a handshake session and sends the browser to the provider."""
    try:
        start = handshake.begin_handshake(platform, user_id)
    except UnknownTagError:
        return _page("Not Found", [f"Unknown platform: {platform}"], 404)
    except RelayError as e:
        logger.error(f"Could not start OAuth for {platform}: {e}")
        return _page("Authentication Error", [str(e)], 500)

    return RedirectResponse(start.authorization_url, status_code=302)


@router.get("/{platform}/callback")
async def oauth_callback(
    platform: str,
    handshake: HandshakeDep,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
):
    if error:
        try:
            handshake.abort_handshake(state, error, platform)
        except ProviderError as e:
            return _page(
                "Authentication Failed",
                [f"Error: {e.error}", "You can close this window and return to Telegram."],
                400,
            )

    if not code or not state:
        return _page("Invalid Request", ["Missing code or state parameter."], 400)

    try:
        Platform.parse(platform)
    except UnknownTagError:
        return _page("Not Found", [f"Unknown platform: {platform}"], 404)

    try:
        await handshake.complete_handshake(state, code, platform)
    except InvalidState as e:
        return _page("Invalid State", [str(e)], 400)
    except RelayError as e:
        logger.error(f"OAuth error for {platform}: {e}")
        return _page(
            "Authentication Error",
            [f"Failed to complete authentication: {e}", "Please try again."],
            500,
        )

    return _page(
        "Authentication Successful!",
        [
            f"You have successfully authenticated with {platform}.",
            "You can close this window and return to Telegram.",
        ],
        200,
        color=_GREEN,
        script="setTimeout(() => window.close(), 3000);",
    )
