import logging
from pathlib import Path
from typing import Optional

# Third-party loggers that are chatty at INFO during DESeq2 fits.
_NOISY_LOGGERS = ("pydeseq2", "numba", "matplotlib")


def init_logging(logfile: Optional[Path] = None, level: int = logging.INFO) -> None:
    """
    Initialize logging with a stream handler + optional file handler.
    All existing handlers are removed so repeated CLI invocations
    (e.g. under CliRunner) do not duplicate output.
    """
    for h in logging.root.handlers[:]:
        logging.root.removeHandler(h)

    handlers = [logging.StreamHandler()]

    if logfile is not None:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile, mode="w"))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
    )

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
