import gzip
import logging
import os
import shutil
import time
from logging.handlers import TimedRotatingFileHandler

from fastapi import Request

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("REQUEST_LOG_FILE", "request_performance.log")
LOG_MAX_SIZE = 20 * 1024 * 1024  # 20 MB
LOG_BACKUP_COUNT = 5             # Keep last 5 log files

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = LOG_LEVEL):
    """Console logging for the application modules."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def compress_file(source_path: str):
    if os.path.isfile(source_path):
        with open(source_path, "rb") as f_in, gzip.open(f"{source_path}.gz", "wb") as f_out:
            shutil.copyfileobj(f_in, f_out)
        os.remove(source_path)


class SizeCappedTimedRotatingFileHandler(TimedRotatingFileHandler):
    """
    Rotates weekly (Monday midnight) or when the file reaches `max_bytes`,
    gzipping rotated files.
    """

    def __init__(self, filename: str, max_bytes: int = LOG_MAX_SIZE,
                 backup_count: int = LOG_BACKUP_COUNT):
        super().__init__(filename, when="W0", backupCount=backup_count, encoding="utf-8", delay=True)
        self.max_bytes = max_bytes

    def shouldRollover(self, record):
        if os.path.exists(self.baseFilename) and os.path.getsize(self.baseFilename) >= self.max_bytes:
            return True
        return super().shouldRollover(record)

    def doRollover(self):
        super().doRollover()
        directory, base = os.path.split(self.baseFilename)
        for name in os.listdir(directory or "."):
            if name.startswith(base + ".") and not name.endswith(".gz"):
                compress_file(os.path.join(directory or ".", name))


def setup_logger(log_file: str = LOG_FILE, name: str = "request_performance"):
    """Request-performance logger writing to a rotating, compressed file."""
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)

    if not any(isinstance(h, SizeCappedTimedRotatingFileHandler) for h in logger.handlers):
        handler = SizeCappedTimedRotatingFileHandler(log_file)
        handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
        logger.addHandler(handler)
    return logger


def create_logging_middleware(app, logger):
    """
    Adds a middleware logging client IP, route, status, elapsed time and body
    size of every request. Bodies themselves are not logged since kiosk
    requests carry camera frames.
    """
    @app.middleware("http")
    async def log_request_response_time(request: Request, call_next):
        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "-"

        response = await call_next(request)
        process_time = time.perf_counter() - start_time

        logger.info(
            f"IP={client_ip} | {request.method} {request.url.path} | Status={response.status_code} | "
            f"Time={process_time:.4f}s | RequestBytes={request.headers.get('content-length', 0)}"
        )
        response.headers["X-Process-Time"] = str(round(process_time, 4))
        return response

    return app
