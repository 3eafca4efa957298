from typing import Sequence, Tuple

from starlette.middleware.cors import CORSMiddleware
from starlette.types import ASGIApp, Receive, Scope, Send


class ScopedCORSMiddleware:
    """
    Storefront routes only accept the shop's origins; paths under `open_prefixes`
    (the operator report) accept any origin.
    """

    def __init__(
        self,
        app: ASGIApp,
        allow_origins: Sequence[str],
        open_prefixes: Tuple[str, ...] = (),
        allow_methods: Sequence[str] = ("GET", "POST", "OPTIONS"),
        allow_headers: Sequence[str] = ("Content-Type", "Authorization"),
    ) -> None:
        self.open_prefixes = tuple(open_prefixes)
        self.restricted = CORSMiddleware(
            app,
            allow_origins=list(allow_origins),
            allow_methods=list(allow_methods),
            allow_headers=list(allow_headers),
        )
        self.open = CORSMiddleware(
            app,
            allow_origins=["*"],
            allow_methods=list(allow_methods),
            allow_headers=list(allow_headers) + ["X-Admin-Token"],
        )

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http" and scope["path"].startswith(self.open_prefixes):
            await self.open(scope, receive, send)
        else:
            await self.restricted(scope, receive, send)
