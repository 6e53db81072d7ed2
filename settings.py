import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path.cwd() / ".env")

DB_NAME = os.environ.get("CONTACTS_DB_PATH", "contacts.db").strip()
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").strip().upper()

HOST = os.environ.get("HOST", "0.0.0.0").strip()
PORT = int(os.environ.get("PORT", "8000"))
