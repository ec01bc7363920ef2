from __future__ import annotations

import uvicorn

from tdhp.api import create_app
from tdhp.settings import settings

app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host=settings.listen_host, port=settings.listen_port)
