# ordered_multicast/config.py
import os
from typing import List, Optional


class ConfigurationError(ValueError):
    """Configuração inválida para o grupo de multicast."""


# --- Funções auxiliares de leitura do ambiente ---

def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        raise ConfigurationError(f"Variável {name} deve ser um inteiro.")


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        raise ConfigurationError(f"Variável {name} deve ser um número.")


def process_id_from_pod_name(pod_name: str) -> int:
    """
    Extrai o ID do processo do nome do Pod injetado pelo StatefulSet.
    Ex: 'ordered-multicast-0' se torna o ID 1 (os IDs do grupo começam em 1).
    """
    try:
        return int(pod_name.split('-')[-1]) + 1
    except (ValueError, AttributeError):
        raise ConfigurationError(f"Não foi possível extrair o ID do processo de '{pod_name}'.")


def parse_peer_addresses(raw: str, self_port: int, self_address: Optional[str] = None) -> List[str]:
    """
    Converte a lista separada por vírgulas de endereços em URLs base, sem o próprio processo.

    Se SELF_ADDRESS não foi informado, qualquer endereço que termine com a porta local
    é considerado o próprio processo (útil quando todos rodam em localhost).
    """
    addresses = [address.strip().rstrip('/') for address in raw.split(',') if address.strip()]
    if self_address:
        own = self_address.rstrip('/')
        return [address for address in addresses if address != own]
    return [address for address in addresses if not address.endswith(f":{self_port}")]


def generate_peer_addresses(service_name: str, group_size: int, process_id: int, port: int) -> List[str]:
    """
    Gera as URLs dos pares a partir dos nomes estáveis do StatefulSet.
    Ex: http://ordered-multicast-1.ordered-multicast-service:8080
    """
    return [
        f"http://{service_name}-{ordinal}.{service_name}-service:{port}"
        for ordinal in range(group_size)
        if ordinal + 1 != process_id
    ]


# --- Identificação do processo ---

POD_NAME = os.getenv("POD_NAME", "ordered-multicast-0")

if os.getenv("PROCESS_ID"):
    PROCESS_ID = _env_int("PROCESS_ID", 1)
else:
    PROCESS_ID = process_id_from_pod_name(POD_NAME)

# Número total de processos no grupo, usado para verificar a conclusão dos ACKs.
GROUP_SIZE = _env_int("GROUP_SIZE", _env_int("TOTAL_PROCESSES", 3))

# --- Configurações de Rede ---

# Porta padrão para a API em cada Pod
PEER_PORT = _env_int("PEER_PORT", 8080)

SERVICE_NAME = os.getenv("SERVICE_NAME", "ordered-multicast")
SELF_ADDRESS = os.getenv("SELF_ADDRESS")

if os.getenv("PEER_ADDRESSES"):
    PEERS = parse_peer_addresses(os.environ["PEER_ADDRESSES"], PEER_PORT, SELF_ADDRESS)
else:
    PEERS = generate_peer_addresses(SERVICE_NAME, GROUP_SIZE, PROCESS_ID, PEER_PORT)

# --- Envio ---

SEND_TIMEOUT = _env_float("SEND_TIMEOUT", 5.0)
# 1 tentativa = sem retry
SEND_MAX_ATTEMPTS = _env_int("SEND_MAX_ATTEMPTS", 1)
SEND_BACKOFF = _env_float("SEND_BACKOFF", 0.5)
# Atraso aleatório antes de cada envio para provocar reordenação em demonstrações
SEND_JITTER_MAX = _env_float("SEND_JITTER_MAX", 0.0)

# --- Entrega e monitoramento ---

INITIAL_CLOCK = _env_int("INITIAL_CLOCK", 0)
STALL_TIMEOUT = _env_float("STALL_TIMEOUT", 30.0)
STALL_CHECK_INTERVAL = _env_float("STALL_CHECK_INTERVAL", 5.0)
RECENT_DELIVERIES = _env_int("RECENT_DELIVERIES", 100)

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
