"""Minimal page shells for the login screen and the admin area.

The gateway middleware decides who reaches these; the markup is only a
placeholder for the real front end.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse

router = APIRouter(tags=["pages"])

_LOGIN_PAGE = """<!doctype html>
<html lang="en">
<head><meta charset="utf-8"><title>Admin login</title></head>
<body>
<main>
  <h1>Admin login</h1>
  <form id="request-code">
    <label>Email <input type="email" name="identity" required></label>
    <button type="submit">Send code</button>
  </form>
  <form id="verify-code">
    <label>Code <input name="code" inputmode="numeric" pattern="[0-9]{6}" required></label>
    <button type="submit">Sign in</button>
  </form>
</main>
</body>
</html>
"""

_ADMIN_PAGE = """<!doctype html>
<html lang="en">
<head><meta charset="utf-8"><title>Admin</title></head>
<body>
<main>
  <h1>Admin</h1>
  <p>Signed in as {identity}.</p>
  <form method="post" action="/api/auth/logout"><button type="submit">Log out</button></form>
</main>
</body>
</html>
"""


@router.get("/login", response_class=HTMLResponse)
def login_page() -> HTMLResponse:
    return HTMLResponse(_LOGIN_PAGE, headers={"Cache-Control": "no-store"})


@router.get("/admin", response_class=HTMLResponse)
def admin_page(request: Request) -> HTMLResponse:
    session = getattr(request.state, "admin_session", None)
    identity = session.identity if session is not None else ""
    return HTMLResponse(
        _ADMIN_PAGE.format(identity=identity), headers={"Cache-Control": "no-store"}
    )
