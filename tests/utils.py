from __future__ import annotations

from threading import Event
from typing import Callable, List, Optional, Sequence, Tuple
import time

from fastapi.testclient import TestClient

API_HEADERS = {"Authorization": "Bearer test-magic-key"}


class FakeCompletionClient:
    """Scripted stand-in for the provider.

    ``calls`` records ``(prompt, [(role, content), ...], image)`` per request.
    When ``release`` is set the stream pauses after its first fragment until
    the event fires, and ``first_fragment`` signals that the pause started.
    """

    def __init__(
        self,
        replies: Optional[Sequence[str]] = None,
        fragments: Optional[Sequence[str]] = None,
        error: Optional[Exception] = None,
        release: Optional[Event] = None,
    ) -> None:
        self.replies = list(replies or ["fake reply"])
        self.fragments = list(fragments if fragments is not None else ["Hello", ", ", "world"])
        self.error = error
        self.release = release
        self.first_fragment = Event()
        self.calls: List[Tuple[str, List[Tuple[str, str]], Optional[str]]] = []

    def _record(self, prompt, window, image) -> None:
        self.calls.append((prompt, [(m.role.value, m.content) for m in window], image))

    def complete(self, prompt, window, config, image=None) -> str:
        self._record(prompt, window, image)
        if self.error is not None:
            raise self.error
        return self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]

    def stream(self, prompt, window, config, on_fragment, image=None) -> str:
        self._record(prompt, window, image)
        for idx, fragment in enumerate(self.fragments):
            on_fragment(fragment)
            if idx == 0:
                self.first_fragment.set()
                if self.release is not None:
                    self.release.wait(5)
        if self.error is not None:
            raise self.error
        return "".join(self.fragments)


def wait_for(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def issue_link_token(client: TestClient) -> str:
    res = client.get("/magic-link/request", headers=API_HEADERS)
    assert res.status_code == 200, res.text
    return res.json()["token"]


def login(client: TestClient) -> None:
    """Consume a fresh link token so the client's session is authenticated."""
    token = issue_link_token(client)
    res = client.get("/magic-link/consume", params={"token": token}, follow_redirects=False)
    assert res.status_code == 303, res.text
    assert res.headers["location"] == "/#chat-bottom"
