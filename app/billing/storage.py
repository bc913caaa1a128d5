"""
app/billing/storage.py
----------------------
Where the open bills live between requests.

Every backend exposes the same two calls:

    load()       → the last saved blob, or None
    save(blob)   → persist a blob (dict of JSON-compatible values)

The store does all validation; a backend only moves bytes.
"""
import json
import os

from flask import session


BILLS_KEY = 'bills'


class MemoryStorage:
    """Keeps the blob in a Python attribute (tests, one-off scripts)."""

    def __init__(self, blob=None):
        self.blob   = blob
        self.writes = 0

    def load(self):
        return self.blob

    def save(self, blob) -> None:
        self.blob = json.loads(json.dumps(blob))   # detach from live objects
        self.writes += 1


class FlaskSessionStorage:
    """
    Stores the blob in the Flask session cookie under key 'bills'.

    Money is already stringified by the session objects, so the blob
    survives the session's JSON serialiser untouched.  Needs an active
    request context.
    """

    def __init__(self, key: str = BILLS_KEY):
        self.key = key

    def load(self):
        return session.get(self.key)

    def save(self, blob) -> None:
        session[self.key] = blob
        session.modified  = True


class JsonFileStorage:
    """A single JSON file on disk, for a fixed billing terminal."""

    def __init__(self, path: str):
        self.path = path

    def load(self):
        if not os.path.exists(self.path):
            return None
        with open(self.path, encoding='utf-8') as fh:
            return json.load(fh)

    def save(self, blob) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f'{self.path}.tmp'
        with open(tmp_path, 'w', encoding='utf-8') as fh:
            json.dump(blob, fh, indent=2)
        os.replace(tmp_path, self.path)   # atomic on POSIX and Windows
