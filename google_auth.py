import json
import os
import requests
from flask import Blueprint, redirect, request, session, jsonify
from oauthlib.oauth2 import WebApplicationClient
from oauthlib.oauth2.rfc6749.errors import OAuth2Error


def setup_google_oauth(app, db, User):
    """Setup Google OAuth blueprint. Call this from main app after the models are defined."""
    # Support both GOOGLE_OAUTH_* and GOOGLE_CLIENT_* environment variable names
    GOOGLE_CLIENT_ID = os.environ.get("GOOGLE_OAUTH_CLIENT_ID") or os.environ.get("GOOGLE_CLIENT_ID")
    GOOGLE_CLIENT_SECRET = os.environ.get("GOOGLE_OAUTH_CLIENT_SECRET") or os.environ.get("GOOGLE_CLIENT_SECRET")
    GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"
    FRONTEND_URL = (os.environ.get("FRONTEND_URL") or os.environ.get("CLIENT_URL") or "http://localhost:3000").rstrip('/')

    google_auth = Blueprint("google_auth", __name__, url_prefix="/api/auth")

    if not GOOGLE_CLIENT_ID or not GOOGLE_CLIENT_SECRET:
        app.logger.warning("Google OAuth credentials not configured. Set GOOGLE_OAUTH_CLIENT_ID and GOOGLE_OAUTH_CLIENT_SECRET.")

        @google_auth.route("/google")
        def login_unavailable():
            return jsonify({'error': 'Google sign-in is not configured'}), 503

        app.register_blueprint(google_auth)
        return None

    client = WebApplicationClient(GOOGLE_CLIENT_ID)

    def _callback_url():
        callback_url = request.url_root.rstrip('/') + '/api/auth/google/callback'
        if os.environ.get('FLASK_ENV') == 'production' and callback_url.startswith('http://'):
            callback_url = callback_url.replace('http://', 'https://', 1)
        return callback_url

    @google_auth.route("/google")
    def login():
        google_provider_cfg = requests.get(GOOGLE_DISCOVERY_URL, timeout=10).json()
        authorization_endpoint = google_provider_cfg["authorization_endpoint"]

        request_uri = client.prepare_request_uri(
            authorization_endpoint,
            redirect_uri=_callback_url(),
            scope=["openid", "email", "profile"],
        )
        return redirect(request_uri)

    @google_auth.route("/google/callback")
    def callback():
        code = request.args.get("code")
        if not code:
            return redirect(f"{FRONTEND_URL}/login?error=oauth_failed")

        try:
            google_provider_cfg = requests.get(GOOGLE_DISCOVERY_URL, timeout=10).json()
            token_endpoint = google_provider_cfg["token_endpoint"]

            authorization_response = request.url
            if os.environ.get('FLASK_ENV') == 'production':
                authorization_response = authorization_response.replace("http://", "https://", 1)

            token_url, headers, body = client.prepare_token_request(
                token_endpoint,
                authorization_response=authorization_response,
                redirect_url=_callback_url(),
                code=code,
            )
            token_response = requests.post(
                token_url,
                headers=headers,
                data=body,
                auth=(GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET),
                timeout=10,
            )

            client.parse_request_body_response(json.dumps(token_response.json()))
            userinfo_endpoint = google_provider_cfg["userinfo_endpoint"]
            uri, headers, body = client.add_token(userinfo_endpoint)
            userinfo = requests.get(uri, headers=headers, data=body, timeout=10).json()
        except (requests.exceptions.RequestException, OAuth2Error, KeyError, ValueError) as e:
            app.logger.error(f"Google OAuth error: {str(e)}")
            return redirect(f"{FRONTEND_URL}/login?error=oauth_failed")

        if not userinfo.get("email_verified"):
            return redirect(f"{FRONTEND_URL}/login?error=email_not_verified")

        email = userinfo["email"].lower()
        user = User.query.filter_by(google_id=userinfo["sub"]).first()
        if not user:
            user = User.query.filter_by(email=email).first()
        if not user:
            user = User(
                name=userinfo.get("name") or userinfo.get("given_name") or email.split('@')[0],
                email=email,
                is_oauth=True,
                google_id=userinfo["sub"],
                avatar=userinfo.get("picture"),
                role='client'
            )
            db.session.add(user)
        elif not user.google_id:
            user.google_id = userinfo["sub"]
        db.session.commit()

        session['user_id'] = user.id
        session.permanent = True

        audit = app.extensions.get('security_logger')
        if audit:
            audit.log_authentication('google_login', email, 'success', user_id=user.id)
        return redirect(f"{FRONTEND_URL}/dashboard")

    app.register_blueprint(google_auth)
    return google_auth
