"""Executable entrypoint for the WhatsApp worker service."""

from __future__ import annotations

import logging

import uvicorn

from config import whatsapp_config


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    uvicorn.run(
        "waworker.api:create_app",
        host="0.0.0.0",
        port=whatsapp_config().port,
        factory=True,
        workers=1,
    )


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
