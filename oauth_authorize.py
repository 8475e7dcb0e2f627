# oauth_authorize.py
import html
import logging
import os
import urllib.parse

from fastapi import Request
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse
from fastapi.templating import Jinja2Templates

from errors import AuthenticationFailure, ProtocolError
from scopes import scope_label

logger = logging.getLogger(__name__)


def render_consent_page(application_name, redirect_uri, scope_names, username, action, consent_token):
    scope_items = "\n".join(
        f"                <li>{html.escape(name)}</li>" for name in scope_names
    ) or "                <li>Basic access to your public account information</li>"
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <title>Authorize {html.escape(application_name)}</title>
        <style>
        .consent-container {{
            max-width: 480px;
            margin: 50px auto;
            padding: 30px;
            border-radius: 10px;
            box-shadow: 0 15px 25px rgba(0, 0, 0, 0.2);
            font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif;
        }}

        .consent-container h2 {{
            text-align: center;
            margin-bottom: 20px;
        }}

        .consent-container .redirect {{
            font-size: 13px;
            color: #666;
            word-break: break-all;
        }}

        .consent-container button {{
            padding: 10px 20px;
            font-size: 16px;
            border: none;
            border-radius: 25px;
            cursor: pointer;
            margin-right: 10px;
        }}

        .consent-container button.authorize {{
            background: #629924;
            color: #fff;
        }}
        </style>
    </head>
    <body>
        <div class="consent-container">
            <h2>{html.escape(application_name)} wants to access your account</h2>
            <p>Signed in as <strong>{html.escape(username or '')}</strong></p>
            <p>It will be able to:</p>
            <ul>
{scope_items}
            </ul>
            <p class="redirect">You will be redirected to {html.escape(redirect_uri)}</p>
            <form method="post" action="{html.escape(action)}">
                <input type="hidden" name="consent_token" value="{html.escape(consent_token)}" />
                <button type="submit" class="authorize" name="authorize" value="1">Authorize</button>
                <button type="submit" class="cancel">Cancel</button>
            </form>
        </div>
    </body>
    </html>
    """


class OAuthAuthorize:
    """
    Authorization endpoint. Identity comes from the platform session cookie,
    consent from the rendered form; the AuthorizationServer does the rest.
    """

    def __init__(self, authenticate_url, authentication_cookie, authentication_probe, oauth_server,
                 consent_template=None):
        self.authenticate_url = authenticate_url
        self.authentication_cookie = authentication_cookie
        self.authentication_probe = authentication_probe
        self.oauth_server = oauth_server
        # Optional HTML file replacing the built-in consent page
        self.templates = None
        self.consent_template_name = None
        if consent_template:
            self.templates = Jinja2Templates(directory=os.path.dirname(os.path.abspath(consent_template)))
            self.consent_template_name = os.path.basename(consent_template)

    async def is_authenticated(self, request: Request):
        """Return the session's User, or None. The result is cached on the request."""
        if hasattr(request.state, 'user'):
            return request.state.user

        user = None
        session_token = request.cookies.get(self.authentication_cookie)
        if session_token:
            try:
                user = await self.authentication_probe.verify(session_token)
            except AuthenticationFailure as e:
                logger.info(f"Session cookie rejected: {e}")
        request.state.user = user
        return user

    def login_redirect(self, request: Request):
        url = self.authenticate_url.format(urllib.parse.quote(str(request.url), safe=''))
        return RedirectResponse(url=url, status_code=302)

    async def process(self, request: Request):
        try:
            user = await self.is_authenticated(request)
            if user is None:
                return self.login_redirect(request)

            params = dict(request.query_params)
            auth_request = await self.oauth_server.validate_authorization_request(params)

            if request.method == 'POST':
                form = await request.form()
                self.oauth_server.verify_consent_token(form.get('consent_token'), auth_request, user)
                auth_request.approved = 'authorize' in form
                auth_request.user = user
                return await self.oauth_server.complete_authorization_request(auth_request)

            return self.render_consent(request, auth_request, user)
        except ProtocolError as e:
            logger.warning(f"Authorization request rejected: {e.error} ({e.error_description})")
            return e.generate_http_response()
        except Exception as e:
            logger.exception("Unexpected failure while handling authorization request")
            return PlainTextResponse(str(e), status_code=500)

    def render_consent(self, request: Request, auth_request, user):
        action = request.url.path
        if request.url.query:
            action = f"{action}?{request.url.query}"
        context = {
            "application_name": auth_request.client.name,
            "redirect_uri": auth_request.redirect_uri,
            "scope_names": [scope_label(scope) for scope in auth_request.scopes],
            "username": user.username or user.identifier,
            "action": action,
            "consent_token": self.oauth_server.issue_consent_token(auth_request, user),
        }
        if self.templates is not None:
            return self.templates.TemplateResponse(request, self.consent_template_name, context)
        return HTMLResponse(content=render_consent_page(**context), status_code=200)
