"""
Ingress — Static Asset Stage
==============================

What:  Serves files from a configured directory ahead of the rest of the
       pipeline.
How:   GET/HEAD requests whose path names an existing file are answered by
       Starlette's StaticFiles; everything else (missing files, directories,
       other methods) falls through to the next stage.
When:  After the cross-origin stage and before the security headers, so
       static responses skip the header, throttle and sanitizer work.
"""

import logging
from typing import Optional

from starlette.exceptions import HTTPException
from starlette.staticfiles import StaticFiles
from starlette.types import ASGIApp

from ingress.envelope import RequestEnvelope
from ingress.middleware.base import Stage

logger = logging.getLogger(__name__)


class StaticAssetStage(Stage):
    name = "static"

    def __init__(self, directory: str):
        self.directory = directory
        self.files = StaticFiles(directory=directory, check_dir=False)

    async def process(self, envelope: RequestEnvelope) -> Optional[ASGIApp]:
        if envelope.method not in ("GET", "HEAD"):
            return None

        path = self.files.get_path(envelope.scope)
        try:
            return await self.files.get_response(path, envelope.scope)
        except HTTPException as e:
            if e.status_code == 404:
                return None
            raise
