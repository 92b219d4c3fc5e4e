# ordered_multicast/process_logic.py
import heapq
import threading
import time
from typing import Callable, Dict, FrozenSet, List, Optional, Protocol, Sequence, Set

from ordered_multicast.communication import SendResult
from ordered_multicast.config import ConfigurationError
from ordered_multicast.logger import logger
from ordered_multicast.models import Ack, AckEntry, EngineStatus, Envelope, Message, MessageId

DeliveryCallback = Callable[[Message], None]


class Outbox(Protocol):
    def post(self, peer: str, item: Envelope) -> None: ...


# --- Relógio de Lamport ---

class LogicalClock:
    """
    Relógio lógico de Lamport.

    Não possui lock próprio: só é alterado dentro da região crítica do DeliveryEngine.
    """

    def __init__(self, initial: int = 0):
        if initial < 0:
            raise ValueError("O relógio lógico não pode começar negativo.")
        self._value = initial

    @property
    def value(self) -> int:
        return self._value

    def tick(self) -> int:
        """Avança o relógio para um evento local (envio de mensagem)."""
        self._value += 1
        return self._value

    def observe(self, remote_timestamp: int) -> int:
        """Ajusta o relógio ao receber uma mensagem: max(local, remoto) + 1."""
        old_value = self._value
        self._value = max(self._value, remote_timestamp) + 1
        logger.debug(f"Clock updated: {old_value} -> {self._value} (recebido: {remote_timestamp})")
        return self._value


# --- Fila de Prioridade (Pending Set) ---

class PendingSet:
    """Mensagens ainda não entregues, ordenadas pelo MessageId (menor primeiro)."""

    def __init__(self):
        self._heap: List[MessageId] = []
        self._messages: Dict[MessageId, Message] = {}

    def insert_or_replace(self, message: Message) -> bool:
        """Insere a mensagem; se o ID já existe, substitui a entrada. Retorna True se era nova."""
        is_new = message.id not in self._messages
        if is_new:
            heapq.heappush(self._heap, message.id)
        self._messages[message.id] = message
        return is_new

    def peek_min(self) -> Optional[Message]:
        if not self._heap:
            return None
        return self._messages[self._heap[0]]

    def pop_min(self) -> Optional[Message]:
        if not self._heap:
            return None
        message_id = heapq.heappop(self._heap)
        return self._messages.pop(message_id)

    def ids(self) -> List[MessageId]:
        return sorted(self._heap)

    def __len__(self):
        return len(self._heap)

    def __contains__(self, message_id: MessageId):
        return message_id in self._messages


# --- Tabela de ACKs ---

class AckTable:
    """Para cada MessageId, o conjunto de processos que já confirmaram a mensagem."""

    def __init__(self):
        self._acks: Dict[MessageId, Set[int]] = {}

    def add_ack(self, message_id: MessageId, process_id: int) -> bool:
        """Registra o ACK. Retorna False se o processo já havia confirmado."""
        acked = self._acks.setdefault(message_id, set())
        if process_id in acked:
            return False
        acked.add(process_id)
        return True

    def acked_by(self, message_id: MessageId) -> FrozenSet[int]:
        return frozenset(self._acks.get(message_id, ()))

    def count(self, message_id: MessageId) -> int:
        return len(self._acks.get(message_id, ()))

    def smallest_pending_key(self) -> Optional[MessageId]:
        if not self._acks:
            return None
        return min(self._acks)

    def remove(self, message_id: MessageId):
        self._acks.pop(message_id, None)

    def snapshot(self) -> List[AckEntry]:
        return [
            AckEntry(message_id=message_id, acked_by=sorted(self._acks[message_id]))
            for message_id in sorted(self._acks)
        ]

    def __len__(self):
        return len(self._acks)

    def __contains__(self, message_id: MessageId):
        return message_id in self._acks


# --- Motor de Entrega (Multicast com Ordem Total) ---

class DeliveryEngine:
    """
    Multicast confiável com ordem total, sem sequenciador central.

    Relógio, PendingSet e AckTable pertencem exclusivamente a este objeto e só são
    alterados sob `_state_lock`. Uma mensagem é entregue quando está no topo da fila,
    foi confirmada por todos os membros do grupo e também é a menor chave ainda
    presente na tabela de ACKs.

    Limitação conhecida: se um membro fica permanentemente inacessível, nenhuma
    mensagem posterior alcança o quórum e a entrega para em todos os processos.
    """

    def __init__(
        self,
        process_id: int,
        group_size: int,
        peers: Sequence[str],
        outbox: Outbox,
        on_deliver: Optional[DeliveryCallback] = None,
        initial_clock: int = 0,
        stall_timeout: float = 30.0,
    ):
        if group_size < 1:
            raise ConfigurationError("O grupo precisa de pelo menos um processo.")
        if not 1 <= process_id <= group_size:
            raise ConfigurationError(f"PROCESS_ID {process_id} fora do intervalo 1..{group_size}.")
        if len(peers) != group_size - 1:
            raise ConfigurationError(
                f"Esperados {group_size - 1} pares para um grupo de {group_size}, recebidos {len(peers)}."
            )

        self.process_id = process_id
        self.group_size = group_size
        self.peers = list(peers)
        self.stall_timeout = stall_timeout
        self._outbox = outbox

        self._clock = LogicalClock(initial_clock)
        self._pending = PendingSet()
        self._acks = AckTable()

        # Mutex para proteger o acesso concorrente às estruturas de estado
        self._state_lock = threading.Lock()
        # Serializa os laços de entrega para que os callbacks vejam a ordem global
        self._delivery_lock = threading.RLock()

        self._last_delivered: Optional[MessageId] = None
        self._delivered_count = 0
        self._last_progress = time.monotonic()
        self._listeners: List[DeliveryCallback] = []
        if on_deliver is not None:
            self._listeners.append(on_deliver)

    @property
    def clock(self) -> int:
        with self._state_lock:
            return self._clock.value

    def add_delivery_listener(self, callback: DeliveryCallback):
        self._listeners.append(callback)

    # --- Operações do protocolo ---

    def multicast_send(self, payload: str) -> Message:
        """Origina uma mensagem e a coloca na fila de saída de cada par."""
        with self._state_lock:
            timestamp = self._clock.tick()
            message = Message(
                id=MessageId(timestamp=timestamp, origin_process_id=self.process_id),
                payload=payload,
            )
            self._enqueue_pending(message)
            self._acks.add_ack(message.id, self.process_id)
            for peer in self.peers:
                self._outbox.post(peer, message)

        logger.info(f"Iniciando multicast da mensagem {message.id} para {len(self.peers)} pares.")
        self.try_deliver()
        return message

    def on_message_received(self, message: Message) -> bool:
        """Processa uma mensagem de multicast recebida. Retorna False se ela já foi entregue."""
        with self._state_lock:
            self._clock.observe(message.id.timestamp)

            if self._is_settled(message.id):
                logger.warning(f"Mensagem {message.id} recebida após a entrega. Ignorando duplicata.")
                return False

            is_new = self._enqueue_pending(message)
            self._acks.add_ack(message.id, self.process_id)
            # A origem confirma implicitamente a própria mensagem
            self._acks.add_ack(message.id, message.id.origin_process_id)

            ack = Ack(message_id=message.id, from_process_id=self.process_id)
            for peer in self.peers:
                self._outbox.post(peer, ack)
            clock = self._clock.value

        if is_new:
            logger.info(f"Mensagem {message.id} enfileirada. Relógio local: {clock}.")
        else:
            logger.info(f"Mensagem {message.id} recebida novamente. Entrada substituída.")
        self.try_deliver()
        return True

    def on_ack_received(self, ack: Ack) -> bool:
        """Processa um ACK. Retorna False se a mensagem já foi entregue."""
        with self._state_lock:
            if self._is_settled(ack.message_id):
                logger.debug(f"ACK de P{ack.from_process_id} para {ack.message_id} já entregue. Ignorando.")
                return False

            known = ack.message_id in self._pending
            self._acks.add_ack(ack.message_id, ack.from_process_id)
            count = self._acks.count(ack.message_id)

        if known:
            logger.info(f"ACK de P{ack.from_process_id} para {ack.message_id}: {count}/{self.group_size}.")
        else:
            logger.warning(f"ACK recebido para {ack.message_id} antes da mensagem. Registrado: {count}.")
        self.try_deliver()
        return True

    def try_deliver(self) -> List[Message]:
        """
        Entrega, em ordem, todas as mensagens do topo da fila que já podem ser entregues.

        O laço para no primeiro topo que não pode ser entregue: nunca pula mensagens.
        """
        delivered = []
        with self._delivery_lock:
            while True:
                with self._state_lock:
                    head = self._pending.peek_min()
                    if head is None or not self._is_deliverable(head.id):
                        break
                    self._pending.pop_min()
                    self._acks.remove(head.id)
                    self._last_delivered = head.id
                    self._delivered_count += 1
                    self._last_progress = time.monotonic()

                for listener in self._listeners:
                    try:
                        listener(head)
                    except Exception:
                        # A mensagem já foi entregue; o laço segue com as próximas
                        logger.exception(f"Erro no callback de entrega da mensagem {head.id}.")
                delivered.append(head)
        return delivered

    def handle_send_result(self, result: SendResult):
        """Recebe o resultado de um envio da fila de saída."""
        if not result.ok:
            logger.error(
                f"Falha ao enviar {result.kind} {result.message_id} para {result.peer} "
                f"após {result.attempts} tentativa(s): {result.failure.value} ({result.detail})"
            )
            return
        if isinstance(result.item, Message):
            self.try_deliver()

    # --- Inspeção ---

    def is_stalled(self) -> bool:
        with self._state_lock:
            return self._is_stalled(time.monotonic())

    def status(self) -> EngineStatus:
        with self._state_lock:
            now = time.monotonic()
            head = self._pending.peek_min()
            missing = []
            if head is not None:
                acked = self._acks.acked_by(head.id)
                missing = [pid for pid in range(1, self.group_size + 1) if pid not in acked]
            return EngineStatus(
                process_id=self.process_id,
                group_size=self.group_size,
                clock=self._clock.value,
                pending=self._pending.ids(),
                acks=self._acks.snapshot(),
                head_missing_acks=missing,
                last_delivered=self._last_delivered,
                delivered_count=self._delivered_count,
                seconds_since_progress=round(now - self._last_progress, 3),
                stalled=self._is_stalled(now),
            )

    # --- Auxiliares (chamados com _state_lock adquirido) ---

    def _enqueue_pending(self, message: Message) -> bool:
        if not self._pending:
            self._last_progress = time.monotonic()
        return self._pending.insert_or_replace(message)

    def _is_settled(self, message_id: MessageId) -> bool:
        # A entrega é feita em ordem crescente de MessageId
        return self._last_delivered is not None and message_id <= self._last_delivered

    def _is_deliverable(self, message_id: MessageId) -> bool:
        if self._acks.count(message_id) != self.group_size:
            return False
        return self._acks.smallest_pending_key() == message_id

    def _is_stalled(self, now: float) -> bool:
        return bool(self._pending) and now - self._last_progress >= self.stall_timeout
