import os

from dotenv import load_dotenv

# .env.local takes precedence over .env; real environment wins over both
load_dotenv(".env.local")
load_dotenv()

# -----------------------------
# Storage and uploads
# -----------------------------
DB_FILE = os.getenv("DB_FILE", "./db.json")
UPLOADS_DIR = os.path.abspath(os.getenv("UPLOADS_DIR", "./uploads"))
PENDING_DIR = os.path.abspath(os.getenv("PENDING_DIR", os.path.join(UPLOADS_DIR, "pending_analysis")))

# -----------------------------
# Sentiment analysis
# -----------------------------
EMOTION_API_URL = os.getenv("EMOTION_API_URL", "http://localhost:8000/analyze")
EMOTION_API_TIMEOUT = float(os.getenv("EMOTION_API_TIMEOUT", "30"))
FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
TRANSCODE_TIMEOUT = float(os.getenv("TRANSCODE_TIMEOUT", "120"))
TRANSCODE_SAMPLE_RATE = int(os.getenv("TRANSCODE_SAMPLE_RATE", "16000"))

# -----------------------------
# Avatar SDK (D-ID)
# -----------------------------
DID_CLIENT_KEY = os.getenv("DID_CLIENT_KEY", "")
DID_AGENT_ID = os.getenv("DID_AGENT_ID", "")

# -----------------------------
# Server
# -----------------------------
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", 3001))
