# ordered_multicast/communication.py
import asyncio
import enum
import random
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol

import httpx

from ordered_multicast.logger import logger
from ordered_multicast.models import Ack, Envelope, Message, MessageId

MESSAGE_PATH = "/multicast/message"
ACK_PATH = "/multicast/ack"


class FailureKind(enum.Enum):
    PEER_UNREACHABLE = "peer_unreachable"
    REJECTED = "rejected"


@dataclass(frozen=True)
class SendResult:
    """Resultado final do envio de uma mensagem ou ACK para um par."""
    peer: str
    item: Envelope
    attempts: int = 1
    failure: Optional[FailureKind] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def kind(self) -> str:
        return "mensagem" if isinstance(self.item, Message) else "ACK"

    @property
    def message_id(self) -> MessageId:
        return self.item.id if isinstance(self.item, Message) else self.item.message_id


class Transport(Protocol):
    async def deliver(self, peer: str, item: Envelope) -> SendResult: ...


# --- Transporte HTTP ---

class HttpTransport:
    """
    Envia mensagens e ACKs para os pares via HTTP.

    Falhas de rede nunca são lançadas: voltam como SendResult com o tipo de falha,
    e quem chamou decide o que fazer. Erros de conexão, timeouts e respostas 5xx
    são repetidos até `max_attempts` vezes com backoff exponencial.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: float = 5.0,
        max_attempts: int = 1,
        backoff: float = 0.5,
        jitter_max: float = 0.0,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts deve ser pelo menos 1.")
        self._client = client
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._backoff = backoff
        self._jitter_max = jitter_max

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def deliver(self, peer: str, item: Envelope) -> SendResult:
        path = MESSAGE_PATH if isinstance(item, Message) else ACK_PATH
        url = f"{peer.rstrip('/')}{path}"

        if self._jitter_max > 0:
            await asyncio.sleep(random.uniform(0, self._jitter_max))

        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self._client.post(url, json=item.to_wire(), timeout=self._timeout)
                response.raise_for_status()
                return SendResult(peer=peer, item=item, attempts=attempt)
            except httpx.HTTPStatusError as e:
                failure = FailureKind.REJECTED
                detail = f"HTTP {e.response.status_code}"
                retryable = e.response.status_code >= 500
            except httpx.RequestError as e:
                failure = FailureKind.PEER_UNREACHABLE
                detail = f"{type(e).__name__}: {e}"
                retryable = True

            if not retryable or attempt >= self._max_attempts:
                return SendResult(peer=peer, item=item, attempts=attempt, failure=failure, detail=detail)

            delay = self._backoff * 2 ** (attempt - 1)
            logger.warning(f"Tentativa {attempt} para {url} falhou ({detail}). Nova tentativa em {delay:.2f}s.")
            await asyncio.sleep(delay)


# --- Fila de saída por par ---

class PeerOutbox:
    """
    Uma fila FIFO e uma tarefa de envio por par.

    `post` não bloqueia e pode ser chamado dentro da região crítica do motor de entrega.
    Os itens de um mesmo par saem na ordem em que foram postados; um par lento ou
    fora do ar só atrasa a própria fila.
    """

    def __init__(self, transport: Optional[Transport] = None):
        # Pode ser definido depois, antes de `start`
        self.transport = transport
        self._queues: Dict[str, asyncio.Queue] = {}
        self._workers: Dict[str, asyncio.Task] = {}
        self._listeners: List[Callable[[SendResult], None]] = []
        self._running = False

    def subscribe(self, listener: Callable[[SendResult], None]):
        self._listeners.append(listener)

    def post(self, peer: str, item: Envelope):
        queue = self._queues.get(peer)
        if queue is None:
            queue = self._queues[peer] = asyncio.Queue()
        queue.put_nowait(item)
        if self._running and peer not in self._workers:
            self._spawn(peer)

    def start(self):
        """Inicia as tarefas de envio. Precisa de um event loop em execução."""
        if self.transport is None:
            raise RuntimeError("PeerOutbox iniciado sem transporte.")
        self._running = True
        for peer in self._queues:
            if peer not in self._workers:
                self._spawn(peer)

    async def join(self):
        """Aguarda até que todas as filas tenham sido esvaziadas."""
        for queue in list(self._queues.values()):
            await queue.join()

    async def stop(self):
        self._running = False
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._workers.clear()

    def backlog(self) -> Dict[str, int]:
        return {peer: queue.qsize() for peer, queue in self._queues.items()}

    def _spawn(self, peer: str):
        self._workers[peer] = asyncio.create_task(self._drain(peer, self._queues[peer]))

    async def _drain(self, peer: str, queue: asyncio.Queue):
        while True:
            item = await queue.get()
            try:
                try:
                    result = await self.transport.deliver(peer, item)
                except Exception as e:
                    # Erros inesperados do transporte viram falha do envio; a fila do par continua viva
                    logger.exception(f"Erro inesperado ao enviar para {peer}.")
                    result = SendResult(
                        peer=peer, item=item,
                        failure=FailureKind.PEER_UNREACHABLE,
                        detail=f"{type(e).__name__}: {e}",
                    )
                for listener in self._listeners:
                    try:
                        listener(result)
                    except Exception:
                        # Uma falha no ouvinte não pode derrubar a fila do par
                        logger.exception(f"Erro ao processar o resultado do envio para {peer}.")
            finally:
                queue.task_done()
