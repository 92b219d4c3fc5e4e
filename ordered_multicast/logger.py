# ordered_multicast/logger.py
import sys
from loguru import logger

from ordered_multicast.config import PROCESS_ID, LOG_LEVEL

# Remove o handler padrão para garantir que apenas nossa configuração seja usada
logger.remove()

# Hora, nível, processo e mensagem.
log_format = (
    "<green>{time:HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[process_name]: <6}</cyan> | "
    "<level>{message}</level>"
)

logger.add(
    sys.stderr,
    format=log_format,
    level=LOG_LEVEL,
    colorize=True
)


def patch_logger_with_process_name(process_id: int = PROCESS_ID):
    """Inclui o nome do processo ('P<id>') em todos os registros."""
    logger.configure(extra={"process_name": f"P{process_id}"})


# Aplica a configuração assim que o módulo é importado
patch_logger_with_process_name()

__all__ = ["logger", "patch_logger_with_process_name"]
