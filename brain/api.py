import logging

from fastapi import Depends, FastAPI, Body, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from .config import load_settings
from .errors import BrainError, GraphNotFoundError
from .history import SQLiteRepository
from .llm import LLMService, RepositoryCredentials
from .schemas import (
    ApiKeyRequest, ChatRequest, ChatResponse, GraphDefinition, HaltReason, Halted, Prompt,
)
from .session import SessionManager

settings = load_settings()
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

# Structural halts are a normal outcome of a turn; provider problems are not
HALT_STATUS = {
    HaltReason.MISSING_CREDENTIAL: 400,
    HaltReason.UPSTREAM_SERVICE_ERROR: 502,
    HaltReason.INVALID_RESPONSE: 502,
    HaltReason.ANALYSIS_PARSE_ERROR: 502,
}

repository = SQLiteRepository(settings.db_path)
sessions = SessionManager(
    repository,
    lambda user_id: LLMService(RepositoryCredentials(repository), user_id=user_id, timeout=settings.llm_timeout),
    accumulate_all_types=settings.accumulate_all_types,
    on_analysis_error=settings.analysis_failure,
)

api_app = FastAPI(title="Brain Engine")


def get_repository() -> SQLiteRepository:
    return repository


def get_sessions() -> SessionManager:
    return sessions


@api_app.post("/graphs")
async def save_graph(definition: GraphDefinition, repo: SQLiteRepository = Depends(get_repository),
                     manager: SessionManager = Depends(get_sessions)):
    repo.save_definition(definition)
    manager.drop_graph(definition.graph.id)
    return {"graph_id": definition.graph.id}


@api_app.get("/graphs")
async def list_graphs(user_id: str = None, repo: SQLiteRepository = Depends(get_repository)):
    return {"graphs": [graph.model_dump() for graph in repo.list_graphs(user_id)]}


@api_app.get("/graphs/{graph_id}", response_model=GraphDefinition)
async def get_graph(graph_id: str, repo: SQLiteRepository = Depends(get_repository)):
    try:
        return repo.load_definition(graph_id)
    except GraphNotFoundError as e:
        raise HTTPException(404, str(e))


@api_app.delete("/graphs/{graph_id}")
async def delete_graph(graph_id: str, repo: SQLiteRepository = Depends(get_repository),
                       manager: SessionManager = Depends(get_sessions)):
    repo.delete_graph(graph_id)
    manager.drop_graph(graph_id)
    return {"message": f"Deleted graph {graph_id}"}


@api_app.post("/prompts")
async def save_prompt(prompt: Prompt, repo: SQLiteRepository = Depends(get_repository)):
    repo.save_prompt(prompt)
    return {"prompt_id": prompt.id}


@api_app.put("/users/{user_id}/api-key")
async def set_api_key(user_id: str, body: ApiKeyRequest, repo: SQLiteRepository = Depends(get_repository)):
    repo.set_api_key(user_id, body.provider, body.api_key)
    return {"message": f"{body.provider} API key saved"}


def _stream_body(stream):
    try:
        yield from stream
    except BrainError as e:
        logger.error(f"Stream failed mid-response: {e}")
        raise


@api_app.post("/chat")
def chat(request: ChatRequest = Body(...), manager: SessionManager = Depends(get_sessions)):
    try:
        session = manager.open(request.session_id, request.graph_id, request.user_id)
        result = session.send(request.message, stream=request.stream)
        states = session.store.values()
        if isinstance(result, Halted):
            body = ChatResponse(
                session_id=request.session_id, status="halted", reason=result.reason,
                detail=result.detail, path=result.path, states=states,
            )
            return JSONResponse(body.model_dump(mode="json"), status_code=HALT_STATUS.get(result.reason, 200))
        if result.stream is not None:
            return StreamingResponse(
                _stream_body(result.stream),
                media_type="text/plain; charset=utf-8",
                headers={"Cache-Control": "no-cache", "X-Brain-Node": result.node_id},
                background=BackgroundTask(result.stream.close),
            )
        return ChatResponse(
            session_id=request.session_id, status="responding", reply=result.result.text,
            model=result.result.model, temperature=result.result.temperature, path=result.path, states=states,
        )
    except GraphNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except HTTPException as e:
        raise e
    except Exception as e:
        logger.error(f"Internal error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error running turn: {str(e)}")


@api_app.post("/sessions/{session_id}/reset")
async def reset_session(session_id: str, manager: SessionManager = Depends(get_sessions)):
    session = manager.get(session_id)
    if session is None:
        raise HTTPException(404, f"No session {session_id}")
    session.reset()
    return {"session_id": session_id, "states": session.store.values()}


@api_app.get("/sessions/{session_id}/states")
async def get_states(session_id: str, manager: SessionManager = Depends(get_sessions)):
    session = manager.get(session_id)
    if session is None:
        raise HTTPException(404, f"No session {session_id}")
    return {"session_id": session_id, "states": session.store.values()}


@api_app.get("/history/{session_id}")
async def get_history(session_id: str, repo: SQLiteRepository = Depends(get_repository)):
    history = repo.load_history(session_id)
    if not history:
        raise HTTPException(404, "No history found")
    return {"history": [message.model_dump() for message in history]}


@api_app.get("/")
async def root():
    return {"message": "Brain Engine API"}
