# ordered_multicast/models.py
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base dos modelos trocados entre processos: imutáveis e serializados em camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class MessageId(WireModel):
    """
    Identificador único de uma mensagem de multicast: (timestamp de Lamport, processo de origem).

    A ordem é lexicográfica: primeiro o timestamp, depois o ID do processo de origem.
    Todos os processos usam essa mesma ordem, de forma independente, para concordar
    sobre a ordem global de entrega.
    """
    timestamp: int = Field(ge=0)
    origin_process_id: int = Field(ge=1)

    def sort_key(self) -> Tuple[int, int]:
        return (self.timestamp, self.origin_process_id)

    def __lt__(self, other):
        if not isinstance(other, MessageId):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def __le__(self, other):
        if not isinstance(other, MessageId):
            return NotImplemented
        return self.sort_key() <= other.sort_key()

    def __gt__(self, other):
        if not isinstance(other, MessageId):
            return NotImplemented
        return self.sort_key() > other.sort_key()

    def __ge__(self, other):
        if not isinstance(other, MessageId):
            return NotImplemented
        return self.sort_key() >= other.sort_key()

    def __str__(self):
        return f"({self.timestamp},{self.origin_process_id})"


class Message(WireModel):
    """
    Representa uma mensagem de multicast com seu identificador e conteúdo.
    """
    id: MessageId
    payload: str


class Ack(WireModel):
    """
    Representa uma mensagem de confirmação (ACK).
    """
    message_id: MessageId
    from_process_id: int = Field(ge=1)


class SendRequest(BaseModel):
    """Pedido local para iniciar um multicast."""
    payload: str


# --- Modelos de inspeção ---

class AckEntry(WireModel):
    message_id: MessageId
    acked_by: List[int]


class EngineStatus(WireModel):
    """Fotografia do estado do motor de entrega, para monitoramento."""
    process_id: int
    group_size: int
    clock: int
    pending: List[MessageId]
    acks: List[AckEntry]
    head_missing_acks: List[int]
    last_delivered: Optional[MessageId]
    delivered_count: int
    seconds_since_progress: float
    stalled: bool


# Itens trocados entre pares
Envelope = Union[Message, Ack]
