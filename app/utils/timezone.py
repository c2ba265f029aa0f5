from datetime import datetime
import pytz

from app.config import settings

LOCAL_TZ = pytz.timezone(settings.TIMEZONE)

def get_local_now():
    """Get current time in the configured local timezone"""
    return datetime.now(LOCAL_TZ)
