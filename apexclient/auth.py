"""
Client-side session state: the bearer token, the signed-in user's profile, and
what happens when the server rejects the token.
"""

from abc import ABC, abstractmethod
import json
import logging
import os
from pathlib import Path
import tempfile
import threading
from typing import Any, Callable, Dict, List, Optional

from .util import safe_json_parse


logger = logging.getLogger(__name__)


TOKEN_KEY = 'authToken'
USER_KEY = 'userProfile'

SIGN_IN_PATH = '/student/signin'


class TokenStore(ABC):
    """
    Durable string key/value storage for session state.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        pass


class MemoryTokenStore(TokenStore):
    def __init__(self) -> None:
        self.__values: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self.__values.get(key)

    def set(self, key: str, value: str) -> None:
        self.__values[key] = value

    def remove(self, key: str) -> None:
        self.__values.pop(key, None)


class FileTokenStore(TokenStore):
    """
    Stores all values in one JSON object on disk.

    A file that cannot be read as a JSON object is discarded and the store
    starts out empty.
    """

    def __init__(self, path: Path) -> None:
        self.__path = Path(path)
        self.__lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        try:
            text = self.__path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return {}
        except (OSError, UnicodeDecodeError) as e:
            logger.warning('Discarding unreadable session store {}: {}'.format(self.__path, e))
            self.__path.unlink(missing_ok=True)
            return {}

        values = safe_json_parse(text, {})
        if not isinstance(values, dict):
            logger.warning('Discarding corrupt session store {}'.format(self.__path))
            self.__path.unlink(missing_ok=True)
            return {}
        return {key: value for key, value in values.items() if isinstance(value, str)}

    def _save(self, values: Dict[str, str]) -> None:
        self.__path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(mode='w', dir=self.__path.parent, delete=False, encoding='utf-8') as f:
            json.dump(values, f)
        os.replace(f.name, str(self.__path))

    def get(self, key: str) -> Optional[str]:
        with self.__lock:
            return self._load().get(key)

    def set(self, key: str, value: str) -> None:
        with self.__lock:
            values = self._load()
            values[key] = value
            self._save(values)

    def remove(self, key: str) -> None:
        with self.__lock:
            values = self._load()
            if values.pop(key, None) is not None:
                self._save(values)


class AuthContext:
    """
    The credentials every API call carries.

    Each sign-in or invalidation starts a new epoch. A caller that read the
    token in an older epoch cannot invalidate the newer session, so a late 401
    for a request sent before a fresh login does not log the user out again.
    """

    def __init__(self, store: TokenStore, on_invalidate: Optional[Callable[[], None]] = None) -> None:
        self.store = store
        self.on_invalidate = on_invalidate
        self.__epoch = 0
        self.__lock = threading.Lock()

    @property
    def token(self) -> Optional[str]:
        return self.store.get(TOKEN_KEY) or None

    def credentials(self):
        """
        The current token together with the epoch it belongs to.
        """
        with self.__lock:
            return self.token, self.__epoch

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        profile = safe_json_parse(self.store.get(USER_KEY))
        if profile is not None and not isinstance(profile, dict):
            logger.warning('Discarding corrupt user profile')
            self.store.remove(USER_KEY)
            return None
        return profile

    def sign_in(self, token: str, user: Optional[Dict[str, Any]] = None) -> None:
        with self.__lock:
            self.store.set(TOKEN_KEY, token)
            if user is not None:
                self.store.set(USER_KEY, json.dumps(user))
            else:
                self.store.remove(USER_KEY)
            self.__epoch += 1
        logger.info('Signed in')

    def invalidate(self, epoch: Optional[int] = None) -> bool:
        """
        Forget the session and notify `on_invalidate`.

        @param epoch
          The epoch the caller's credentials came from. If the session has
          moved on since, nothing happens.
        @return
          Whether the session was invalidated.
        """
        with self.__lock:
            if epoch is not None and epoch != self.__epoch:
                logger.info('Ignoring invalidation from stale epoch {} (current {})'.format(epoch, self.__epoch))
                return False
            self.store.remove(TOKEN_KEY)
            self.store.remove(USER_KEY)
            self.__epoch += 1

        logger.info('Session invalidated')
        if self.on_invalidate is not None:
            self.on_invalidate()
        return True


class Navigator:
    """
    The browsing context of the application: where the user currently is.
    """

    def __init__(self, path: str = '/') -> None:
        self.path = path
        self.history: List[str] = [path]

    def navigate(self, path: str) -> None:
        logger.info('Navigating to {}'.format(path))
        self.path = path
        self.history.append(path)


def redirect_to_sign_in(navigator: Navigator, sign_in_path: str = SIGN_IN_PATH) -> Callable[[], None]:
    """
    An `on_invalidate` callback that sends the user to the sign-in page unless
    they are already signing in or up.
    """
    def redirect():
        if '/signin' in navigator.path or '/signup' in navigator.path:
            return
        navigator.navigate(sign_in_path)
    return redirect
