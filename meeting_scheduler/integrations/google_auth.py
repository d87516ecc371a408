"""Google OAuth authentication helper."""

import os

from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from meeting_scheduler.config import settings


class GoogleCredentialsError(Exception):
    """No usable Google credentials could be loaded."""


def load_stored_credentials(token_file: str = None, scopes=None):
    """Load credentials from the token file, refreshing them when expired."""
    token_file = token_file or settings.google_token_file
    scopes = scopes or settings.google_scopes_list
    if not os.path.exists(token_file):
        return None

    creds = Credentials.from_authorized_user_file(token_file, scopes)
    if not creds.valid and creds.expired and creds.refresh_token:
        creds.refresh(Request())
        with open(token_file, "w") as token:
            token.write(creds.to_json())
    return creds


def get_google_credentials(interactive: bool = False):
    """
    Get Google OAuth credentials.

    Args:
        interactive: run the local-server consent flow when no token is stored

    Raises:
        GoogleCredentialsError: if no valid credentials are available
    """
    creds = load_stored_credentials()

    if (not creds or not creds.valid) and interactive and os.path.exists(settings.google_client_secret_file):
        flow = InstalledAppFlow.from_client_secrets_file(
            settings.google_client_secret_file,
            settings.google_scopes_list
        )
        creds = flow.run_local_server(port=0)
        with open(settings.google_token_file, "w") as token:
            token.write(creds.to_json())

    if not creds or not creds.valid:
        raise GoogleCredentialsError("Google credentials not available. Please authenticate.")
    return creds
