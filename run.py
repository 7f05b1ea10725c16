"""
KAAPAV WhatsApp Bot — Entry Point
"""
import platform
import uvicorn

from kaapav import settings

if __name__ == "__main__":
    port = settings.PORT
    log_level = settings.LOG_LEVEL.lower()

    if platform.system() == "Windows":
        uvicorn.run("kaapav.app:app", host="0.0.0.0", port=port, log_level=log_level, loop="asyncio")
    else:
        uvicorn.run("kaapav.app:app", host="0.0.0.0", port=port, log_level=log_level)
