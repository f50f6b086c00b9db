import os

from dotenv import load_dotenv

load_dotenv()

from entitlements import create_app  # noqa: E402
from entitlements.workers.celery_app import celery_app  # noqa: E402,F401

config = os.getenv("APP_ENV", "production")

app = create_app(config)
