import logging

from konsul.request_id import RequestIdFilter


def configure_logging() -> None:
    """Setzt ein einfaches Logging-Format für die gesamte Anwendung."""
    # ``basicConfig`` legt den Root-Logger samt Konsolen-Handler an.
    logging.basicConfig(
        level=logging.INFO,
        format=(
            "%(asctime)s %(levelname)s [%(name)s] "
            "[%(request_id)s] [%(conversation)s] %(message)s"
        ),
    )
    # Filter je Handler; Records aus Unter-Loggern passieren den Root-Filter nicht.
    for handler in logging.getLogger().handlers:
        handler.addFilter(RequestIdFilter())
