import logging

import notifiers.logging

from lifeline.config import SETTINGS


def get_log_handlers(logger, settings=SETTINGS):
    if settings.TELEGRAM_TOKEN is None:
        return []
    handler = notifiers.logging.NotificationHandler(
        "telegram",
        defaults={
            "token": settings.TELEGRAM_TOKEN,
            "chat_id": settings.TELEGRAM_CHAT_ID,
        },
    )
    handler.setLevel(logging.WARNING)
    logger.addHandler(handler)
    return [handler]
