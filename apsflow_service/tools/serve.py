"""
Run the service with uvicorn.

    PYTHONPATH=. python tools/serve.py
"""

import uvicorn

from app.config import LOG_LEVEL, PORT, is_debug

if __name__ == "__main__":
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=PORT,
        reload=is_debug(),
        log_level=LOG_LEVEL.lower(),
    )
