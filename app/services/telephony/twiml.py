"""TwiML generation for incoming calls."""
from typing import Dict, Optional
from urllib.parse import urlencode


def escape_xml(text: str) -> str:
    """Escape XML special characters."""
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def build_stream_url(base_url: str, path: str = "/media-stream", conversation_id: Optional[str] = None) -> str:
    """Turn an http(s) base URL into the wss:// media stream URL."""
    base = base_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    elif not base.startswith(("ws://", "wss://")):
        base = f"wss://{base}"
    url = f"{base}{path}"
    if conversation_id:
        url = f"{url}?{urlencode({'conversation_id': conversation_id})}"
    return url


def generate_connect_stream_twiml(
    stream_url: str,
    parameters: Optional[Dict[str, str]] = None,
    intro_text: Optional[str] = None,
) -> str:
    """
    Generate TwiML that bridges the call to a bidirectional media stream.

    Args:
        stream_url: wss:// URL of the media stream endpoint
        parameters: Custom parameters delivered in the stream's start event
        intro_text: Optional text spoken before connecting

    Returns:
        TwiML XML string
    """
    say = ""
    if intro_text:
        say = f'\n    <Say voice="Polly.Joanna-Neural">{escape_xml(intro_text)}</Say>'

    params = ""
    for name, value in (parameters or {}).items():
        if value is None:
            continue
        params += f'\n            <Parameter name="{escape_xml(name)}" value="{escape_xml(str(value))}"/>'

    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>{say}
    <Connect>
        <Stream url="{escape_xml(stream_url)}">{params}
        </Stream>
    </Connect>
</Response>"""
