# -*- coding: utf-8 -*-
"""Access tokens for providers, either as the application or on behalf of the signed in user."""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import timezone

import google.auth
import google.auth.transport.requests

from gcp_secret_rekeyer.models import AccessTokenCredential

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"


class IdentityService(ABC):

    @abstractmethod
    def get_access_token_for_application(self, scopes=None):
        """Returns an AccessTokenCredential for the service's own identity."""

    @abstractmethod
    def get_access_token_on_behalf_of_current_user(self, resource=None):
        """Returns an AccessTokenCredential for the signed in user or None if nobody is."""

    @property
    def user_name(self):
        return ""

    @property
    def user_email(self):
        return ""


def _to_credential(credentials, username="", display_user_name="", display_email=""):
    expiry = credentials.expiry
    if expiry is not None and expiry.tzinfo is None:
        # google-auth keeps expiry as naive utc
        expiry = expiry.replace(tzinfo=timezone.utc)
    return AccessTokenCredential(access_token=credentials.token or "",
                                 expiry=expiry,
                                 username=username,
                                 display_user_name=display_user_name,
                                 display_email=display_email)


class GoogleIdentityService(IdentityService):
    """IdentityService backed by google-auth.

    The application identity is whatever ``google.auth.default()`` resolves to (or
    ``_credentials_callback``). The signed in user is supplied by the hosting web layer through
    ``_user_callback`` which returns ``(credentials, user_name, user_email)`` or None.
    """

    def __init__(self, scopes=None, _credentials_callback=None, _user_callback=None):
        self._scopes = list(scopes or [CLOUD_PLATFORM_SCOPE])
        self._credentials_callback = _credentials_callback
        self._user_callback = _user_callback
        self.ns = threading.local()

    def _application_credentials(self, scopes):
        if not hasattr(self.ns, "_credentials"):
            if self._credentials_callback is not None:
                _credentials, _project_id = self._credentials_callback()
            else:
                _credentials, _project_id = google.auth.default(scopes=scopes)
            self.ns._credentials = _credentials
            self.ns._project_id = _project_id
        return self.ns._credentials

    @staticmethod
    def _refreshed(credentials):
        if not credentials.valid:
            credentials.refresh(google.auth.transport.requests.Request())
        return credentials

    def _current_user(self):
        if self._user_callback is None:
            return None
        return self._user_callback()

    def get_access_token_for_application(self, scopes=None):
        credentials = self._refreshed(self._application_credentials(scopes or self._scopes))
        username = getattr(credentials, "service_account_email", "") or ""
        return _to_credential(credentials, username=username, display_user_name=username,
                              display_email=username)

    def get_access_token_on_behalf_of_current_user(self, resource=None):
        user = self._current_user()
        if user is None:
            logging.getLogger(__name__).warning("Token on behalf of user requested but no user "
                                                "is signed in")
            return None
        credentials, user_name, user_email = user
        credentials = self._refreshed(credentials)
        return _to_credential(credentials, username=user_email, display_user_name=user_name,
                              display_email=user_email)

    @property
    def user_name(self):
        user = self._current_user()
        return user[1] if user else ""

    @property
    def user_email(self):
        user = self._current_user()
        return user[2] if user else ""
