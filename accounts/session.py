class ApiSession:
    """Backend credentials for one browser session.

    Wraps an injected mapping (the Django session for web requests) so the
    bearer token and the backend's user payload are never held globally.
    """

    TOKEN_KEY = "backend_api_token"
    USER_KEY = "backend_api_user"

    def __init__(self, storage):
        self.storage = storage

    @property
    def token(self):
        return self.storage.get(self.TOKEN_KEY)

    @property
    def user(self):
        return self.storage.get(self.USER_KEY) or {}

    @property
    def is_active(self):
        return bool(self.token)

    def start(self, token, user):
        self.storage[self.TOKEN_KEY] = token
        self.storage[self.USER_KEY] = user or {}

    def update_user(self, user):
        self.storage[self.USER_KEY] = user or {}

    def clear(self):
        self.storage.pop(self.TOKEN_KEY, None)
        self.storage.pop(self.USER_KEY, None)
