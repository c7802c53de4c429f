"""Authentication module for the Gmail API.

Exchanges stored Google OAuth2 refresh tokens for access tokens. The
consent flow itself lives in the web layer outside this package.

Usage:
    from jobtracker.auth import GoogleAuth

    auth = GoogleAuth(
        client_id="your-client-id.apps.googleusercontent.com",
        client_secret=os.environ["GOOGLE_CLIENT_SECRET"],
        refresh_token=account.credential,
    )

    token = auth.get_access_token()
"""

from jobtracker.auth.google_oauth import GoogleAuth

__all__ = ["GoogleAuth"]
