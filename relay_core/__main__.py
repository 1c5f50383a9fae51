"""启动中继服务：python -m relay_core。"""

import uvicorn

from relay_core.api.app import create_app
from relay_core.config.settings import settings


def main() -> None:
    uvicorn.run(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
