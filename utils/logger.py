from loguru import logger
import sys
from pathlib import Path
from typing import Optional

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSSSSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[rel_path]}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSSSSS} | {level: <8} | {extra[rel_path]}:{line} - {message}"


def enrich_record(record):
    # 计算相对路径
    file_path = Path(record["file"].path)
    try:
        relative_path = file_path.relative_to(Path.cwd())
    except ValueError:
        relative_path = file_path
    record["extra"]["rel_path"] = str(relative_path)
    return True


def configure_logger(log_file: Optional[str] = None, level: str = "INFO"):
    """Route all logging to stderr, and append to ``log_file`` when given.

    The file sink plays the role of ``exec > >(tee -a $LOG_FILE)``: every line
    shown on the console is also kept on disk for later inspection.
    """
    logger.remove()
    logger.add(
        sys.stderr,
        format=CONSOLE_FORMAT,
        colorize=True,
        level=level,
        filter=enrich_record,
    )
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            format=FILE_FORMAT,
            level=level,
            filter=enrich_record,
            encoding="utf-8",
            mode="a",
        )
