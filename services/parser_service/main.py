"""Parser Service - FastAPI application."""

import logging
import os
import sys
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

# Add shared module to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))
from shared.config import get_default_timezone
from shared.errors import ValidationError
from services.parser_service.handler import LineInterpreter
from services.parser_service.router import ParserRouter
from services.parser_service.worker import ParseRequest, ParseResponse, ParseWorker

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

logger = logging.getLogger(__name__)

# Global instances
worker: Optional[ParseWorker] = None
router = ParserRouter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global worker

    logger.info("Parser Service starting up...")

    worker = ParseWorker(LineInterpreter(timezone=get_default_timezone()))
    await worker.start()
    logger.info(f"Parse worker ready (timezone {worker.interpreter.timezone})")

    yield

    await worker.stop()
    logger.info("Parser Service shutting down...")


# Create FastAPI application
app = FastAPI(
    title="Parser Service",
    description="Natural-language line interpretation for notes",
    version="0.1.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Error handling middleware
@app.middleware("http")
async def error_handling_middleware(request: Request, call_next):
    """Global error handling middleware."""
    try:
        response = await call_next(request)
        return response
    except Exception as exc:
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "detail": str(exc)
            }
        )


@app.get("/health", status_code=status.HTTP_200_OK)
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy" if worker is not None and worker.running else "degraded",
        "service": "parser_service",
        "version": "0.1.0",
        "timezone": worker.interpreter.timezone if worker else None,
        "variables": len(worker.interpreter.environment) if worker else 0,
    }


# Request/Response models
class ClassifyRequest(BaseModel):
    text: str = Field(..., description="Line to classify")


class DocumentRequest(BaseModel):
    lines: List[str] = Field(..., description="Document lines, top to bottom")
    timezone: Optional[str] = Field(None, description="IANA timezone for date phrases")
    reset: bool = Field(True, description="Clear variables before parsing")


class RemapRequest(BaseModel):
    mapping: Dict[int, int] = Field(..., description="Old line number to new line number")


@app.post("/api/v1/parse", status_code=status.HTTP_200_OK, response_model=ParseResponse)
async def parse_line(request: ParseRequest):
    """Parse one line; the response lists dependent lines to parse again."""
    return await worker.submit(request)


@app.post("/api/v1/classify", status_code=status.HTTP_200_OK)
async def classify_line(request: ClassifyRequest):
    try:
        domain = router.classify(request.text)
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail={"error": str(e), "type": e.error_type}
        )
    return {"domain": domain}


@app.post("/api/v1/document", status_code=status.HTTP_200_OK, response_model=List[ParseResponse])
async def parse_document(request: DocumentRequest):
    """Parse a batch of lines in order so earlier definitions resolve later lines."""
    logger.info(f"Parsing document with {len(request.lines)} lines")
    return await worker.submit_document(request.lines, request.timezone, reset=request.reset)


@app.delete("/api/v1/lines/{line_number}", status_code=status.HTTP_200_OK)
async def delete_line(line_number: int):
    return {"removedVariables": worker.line_deleted(line_number)}


@app.post("/api/v1/lines/remap", status_code=status.HTTP_200_OK)
async def remap_lines(request: RemapRequest):
    worker.remap(request.mapping)
    return {"remapped": len(request.mapping)}


@app.delete("/api/v1/variables", status_code=status.HTTP_200_OK)
async def clear_variables():
    worker.reset()
    return {"cleared": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PARSER_SERVICE_PORT", "8006"))
    uvicorn.run(app, host="0.0.0.0", port=port)
