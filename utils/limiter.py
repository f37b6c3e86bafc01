"""Rate limiter shared by the app and the routes."""
import os
from dotenv import load_dotenv
from slowapi import Limiter
from slowapi.util import get_remote_address

load_dotenv()

# In-memory storage, limits are per process.
limiter = Limiter(key_func=get_remote_address)
UPLOAD_RATE_LIMIT = os.getenv("UPLOAD_RATE_LIMIT", "15/minute")
