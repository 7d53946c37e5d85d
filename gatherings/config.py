import os
from dotenv import load_dotenv

load_dotenv()

# "memory" keeps everything in the process, "mongo" persists through motor
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "memory").lower()
MONGO_URL = os.getenv("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.getenv("DB_NAME", "gatherings")

# "users" multicasts to invitee devices, "topic" broadcasts on gathering_<id>
NOTIFICATION_MODE = os.getenv("NOTIFICATION_MODE", "users").lower()
EXPO_PUSH_URL = os.getenv("EXPO_PUSH_URL", "https://exp.host/--/api/v2/push/send")
DISPATCH_TIMEOUT_SECONDS = float(os.getenv("DISPATCH_TIMEOUT_SECONDS", "10"))

IDENTITY_HEADER = os.getenv("IDENTITY_HEADER", "X-User-Id")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", "8000"))
