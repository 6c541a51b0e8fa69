"""Server entrypoint: ``python -m ltcms`` or ``ltcms-server``.

Secrets are validated before uvicorn starts, so a misconfigured deployment
exits with status 1 without ever binding the port.
"""

import uvicorn

from ltcms.core import settings, setup_logging
from ltcms.main import create_app, initialize_security


def main() -> None:
    setup_logging(
        level=settings.log_level,
        format_type="structured" if not settings.debug else "dev",
    )
    context = initialize_security(settings)
    uvicorn.run(
        create_app(security_context=context),
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
