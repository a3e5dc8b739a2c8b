"""Run the relay: python -m relay"""

import uvicorn

from relay.config import settings


def main():
    uvicorn.run("relay.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
