"""Fakes and builders shared by the unit tests."""

import httpx
import jwt

BASE_URL = "http://testserver/api"
USER_ID = "user-123"
OTHER_USER_ID = "user-456"
T0 = 1_700_000_000


def make_token(issued_at: int = T0, lifetime: int = 3600, sub: str = USER_ID) -> str:
    return jwt.encode(
        {"sub": sub, "iat": issued_at, "exp": issued_at + lifetime},
        "test-secret",
        algorithm="HS256",
    )


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeBackend:
    """Route table for httpx.MockTransport; the last queued response repeats."""

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, *responses) -> None:
        self.routes.setdefault((method, path), []).extend(responses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api")
        queue = self.routes.get((request.method, path))
        if not queue:
            return httpx.Response(404, json={"message": f"no route for {path}"})

        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(response):
            response = response(request)
        if isinstance(response, httpx.Response):
            return response
        status, body = response
        return httpx.Response(status, json=body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method and r.url.path.removeprefix("/api") == path
        ]


class FakeSocket:
    """Stands in for socketio.AsyncClient."""

    def __init__(self, fail_with: Exception | None = None):
        self.fail_with = fail_with
        self.handlers: dict = {}
        self.connect_calls: list[tuple[str, dict]] = []
        self.emitted: list[tuple] = []
        self.connected = False

    def on(self, event, handler=None):
        self.handlers[event] = handler

    async def connect(self, url, **kwargs):
        self.connect_calls.append((url, kwargs))
        if self.fail_with is not None:
            raise self.fail_with
        self.connected = True
        if "connect" in self.handlers:
            await self.handlers["connect"]()

    async def disconnect(self):
        was_connected = self.connected
        self.connected = False
        if was_connected and "disconnect" in self.handlers:
            await self.handlers["disconnect"]("client disconnect")

    async def emit(self, event, data=None):
        self.emitted.append((event, data))

    async def server_event(self, name, payload=None):
        await self.handlers[name](payload)

    async def drop(self, reason="transport close"):
        self.connected = False
        await self.handlers["disconnect"](reason)


class FakeSocketFactory:
    """Each call builds a socket; queued outcomes decide whether its connect fails."""

    def __init__(self, outcomes: list | None = None, fail_always: Exception | None = None):
        self.outcomes = list(outcomes or [])
        self.fail_always = fail_always
        self.sockets: list[FakeSocket] = []

    def __call__(self) -> FakeSocket:
        if self.fail_always is not None:
            failure = self.fail_always
        else:
            failure = self.outcomes.pop(0) if self.outcomes else None
        socket = FakeSocket(failure)
        self.sockets.append(socket)
        return socket

    @property
    def last(self) -> FakeSocket:
        return self.sockets[-1]


async def no_sleep(delay: float) -> None:
    return None


