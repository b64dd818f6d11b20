"""
Application pages: the home page and the protected API.
"""

import html
import json
from typing import Dict, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import HTMLResponse

from ..auth.session import ensure_authenticated, get_optional_user
from ..models import UserProfile


router = APIRouter(tags=["pages"])


@router.get("/", response_class=HTMLResponse)
async def index(user: Optional[UserProfile] = Depends(get_optional_user)) -> HTMLResponse:
    """Home page showing the signed-in user, if any."""
    return HTMLResponse(content=_render_index(user), status_code=200)


@router.get("/api")
async def api(user: UserProfile = Depends(ensure_authenticated)) -> Dict[str, str]:
    return {"message": "Response from API endpoint"}


# =============================================================================
# HTML Templates
# =============================================================================

def _render_index(user: Optional[UserProfile]) -> str:
    if user is None:
        body = """
            <p>You are not signed in.</p>
            <a href="/login" class="button">Sign in</a>
        """
    else:
        user_string = json.dumps(user.to_public_dict(), indent=2)
        body = f"""
            <p class="welcome">Welcome, {html.escape(user.display_name or user.oid)}</p>
            <pre>{html.escape(user_string)}</pre>
            <a href="/api" class="button">Call API</a>
            <a href="/logout" class="button">Sign out</a>
        """

    return f"""
    <!DOCTYPE html>
    <html lang="en">
    <head>
        <meta charset="UTF-8">
        <meta name="viewport" content="width=device-width, initial-scale=1.0">
        <title>Azure AD OpenID Connect Sample</title>
        <style>
            body {{
                font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, Helvetica, Arial, sans-serif;
                max-width: 720px;
                margin: 40px auto;
                padding: 0 20px;
                color: #1f2937;
            }}
            pre {{
                background: #f3f4f6;
                padding: 16px;
                border-radius: 8px;
                overflow-x: auto;
            }}
            .button {{
                display: inline-block;
                background: #667eea;
                color: white;
                padding: 10px 24px;
                border-radius: 8px;
                text-decoration: none;
                margin-right: 8px;
            }}
        </style>
    </head>
    <body>
        <h1>Azure AD OpenID Connect Sample</h1>
        {body}
    </body>
    </html>
    """
