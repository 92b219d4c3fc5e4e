# ordered_multicast/main.py
import asyncio
from collections import deque
from contextlib import asynccontextmanager
from typing import Optional, Sequence, Set

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException

from ordered_multicast import config
from ordered_multicast.communication import HttpTransport, PeerOutbox, Transport
from ordered_multicast.logger import logger
from ordered_multicast.models import Ack, EngineStatus, Message, SendRequest
from ordered_multicast.process_logic import DeliveryEngine

# --- Gerenciamento de Tarefas em Background ---
# Manter uma referência forte às tarefas para evitar que sejam coletadas pelo garbage collector
background_tasks: Set[asyncio.Task] = set()


def create_background_task(coroutine):
    """Cria e gerencia uma tarefa em background."""
    logger.info(f"Agendando a corrotina '{coroutine.__name__}' para execução em background.")
    task = asyncio.create_task(coroutine)
    background_tasks.add(task)
    # Adiciona um callback para remover a tarefa do conjunto quando ela terminar
    task.add_done_callback(background_tasks.discard)
    return task


async def monitor_stalls(engine: DeliveryEngine, interval: float):
    """Avisa quando a entrega fica parada (grupo degradado) e quando volta a andar."""
    degraded = False
    while True:
        await asyncio.sleep(interval)
        stalled = engine.is_stalled()
        if stalled and not degraded:
            status = engine.status()
            logger.warning(
                f"GRUPO DEGRADADO: nenhuma entrega há {status.seconds_since_progress}s. "
                f"Topo aguardando ACK de {status.head_missing_acks}."
            )
        elif degraded and not stalled:
            logger.info("Entrega retomada. Grupo saudável novamente.")
        degraded = stalled


def create_app(
    process_id: int = config.PROCESS_ID,
    group_size: int = config.GROUP_SIZE,
    peers: Sequence[str] = config.PEERS,
    transport: Optional[Transport] = None,
    initial_clock: int = config.INITIAL_CLOCK,
    stall_timeout: float = config.STALL_TIMEOUT,
    stall_check_interval: float = config.STALL_CHECK_INTERVAL,
) -> FastAPI:
    # Sem transporte explícito, o cliente HTTP só é aberto no lifespan
    outbox = PeerOutbox(transport)
    recent_deliveries = deque(maxlen=config.RECENT_DELIVERIES)

    def on_deliver(message: Message):
        logger.success(f"ENTREGUE! Conteúdo: '{message.payload}' (ID: {message.id})")
        recent_deliveries.append(message)

    engine = DeliveryEngine(
        process_id=process_id,
        group_size=group_size,
        peers=peers,
        outbox=outbox,
        on_deliver=on_deliver,
        initial_clock=initial_clock,
        stall_timeout=stall_timeout,
    )
    outbox.subscribe(engine.handle_send_result)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        client = None
        if transport is None:
            client = httpx.AsyncClient()
            outbox.transport = HttpTransport(
                client,
                timeout=config.SEND_TIMEOUT,
                max_attempts=config.SEND_MAX_ATTEMPTS,
                backoff=config.SEND_BACKOFF,
                jitter_max=config.SEND_JITTER_MAX,
            )
        outbox.start()
        monitor = create_background_task(monitor_stalls(engine, stall_check_interval))
        try:
            yield
        finally:
            monitor.cancel()
            await outbox.stop()
            if client is not None:
                await client.aclose()

    app = FastAPI(title=f"Processo P{process_id} - Multicast com Ordem Total", lifespan=lifespan)
    app.state.engine = engine
    app.state.outbox = outbox

    def check_member(process_id_field: int, name: str):
        if not 1 <= process_id_field <= group_size:
            raise HTTPException(
                status_code=422,
                detail=f"{name} {process_id_field} fora do grupo 1..{group_size}.",
            )

    # --- Endpoints da API ---

    @app.get("/")
    def read_root():
        """Endpoint de status para verificar a saúde e o estado atual do processo."""
        return {"process_id": process_id, "current_clock": engine.clock, "status": "Running"}

    @app.post("/multicast/send", status_code=202)
    async def send_multicast_message(request: SendRequest):
        message = engine.multicast_send(request.payload)
        return {"status": "Multicast initiated.", "messageId": message.id.to_wire()}

    @app.post("/multicast/message")
    async def receive_message_endpoint(message: Message):
        check_member(message.id.origin_process_id, "originProcessId")
        logger.info(f"Recebido MENSAGEM {message.id} de P{message.id.origin_process_id}")
        accepted = engine.on_message_received(message)
        return {"status": "Message received." if accepted else "Message already delivered."}

    @app.post("/multicast/ack")
    async def receive_ack_endpoint(ack: Ack):
        check_member(ack.message_id.origin_process_id, "originProcessId")
        check_member(ack.from_process_id, "fromProcessId")
        accepted = engine.on_ack_received(ack)
        return {"status": "ACK processed." if accepted else "ACK for delivered message."}

    @app.get("/multicast/status", response_model=EngineStatus)
    def read_status():
        return engine.status()

    @app.get("/multicast/delivered")
    def read_delivered():
        return {"delivered": [message.to_wire() for message in recent_deliveries]}

    return app


app = create_app()

# --- Função para iniciar o servidor ---

def start():
    """Inicia o servidor uvicorn."""
    logger.info(f"Iniciando processo P{config.PROCESS_ID} na porta {config.PEER_PORT} com pares {config.PEERS}")
    uvicorn.run(app, host="0.0.0.0", port=config.PEER_PORT)


if __name__ == "__main__":
    start()
