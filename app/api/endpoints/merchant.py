# app/api/endpoints/merchant.py
"""
Merchant endpoints.

Public: service info and health. Paid: simulated weather, compute, image and
agent-task services; X402Middleware only lets requests reach these once the
payment has been settled.
"""
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.encoders import jsonable_encoder

from app.api.models.merchant import AgentTaskRequest, ComputeRequest, ImageRequest, ServiceResponse
from app.x402.dependencies import PaymentContext, get_payment_context

logger = logging.getLogger(__name__)

router = APIRouter()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _millis() -> int:
    return int(time.time() * 1000)


def _receipt(payment: PaymentContext) -> Optional[Dict[str, Any]]:
    return payment.receipt.model_dump(by_alias=True) if payment.receipt else None


def _facilitators(request: Request) -> Dict[str, Dict[str, str]]:
    registry = request.app.state.registry
    return {
        binding.name: {
            "url": binding.facilitator_url,
            "network": binding.network,
            "paymentAddress": next(
                entry.template.pay_to for entry in registry.entries()
                if entry.binding.name == binding.name
            ),
        }
        for binding in registry.bindings()
    }


@router.get("/", summary="Service info", tags=["default"])
def read_root(request: Request):
    """Describe the merchant, its facilitators and the paid endpoints."""
    registry = request.app.state.registry
    paid: Dict[str, Dict[str, Any]] = {}
    for entry in registry.entries():
        paid.setdefault(entry.binding.name, {})[f"{entry.method} {entry.path}"] = {
            "price": entry.template.price,
            "asset": entry.template.asset,
            "network": entry.template.network,
            "description": entry.template.description,
        }

    return {
        "name": request.app.title,
        "description": "A merchant server implementing the x402 payment protocol with multiple facilitators",
        "facilitators": _facilitators(request),
        "endpoints": {
            "public": {
                "GET /": "This info page",
                "GET /health": "Health check",
            },
            "paid": paid,
        },
        "protocol": "x402",
    }


@router.get("/health", summary="Health Check", tags=["default"])
def health(request: Request):
    """ Basic health check endpoint. """
    return {
        "status": "healthy",
        "timestamp": _now(),
        "facilitators": _facilitators(request),
        "nonces": request.app.state.gate.nonce_store.stats(),
    }


@router.get("/api/weather", response_model=ServiceResponse, tags=["paid"])
async def get_weather(payment: PaymentContext = Depends(get_payment_context)) -> ServiceResponse:
    """Simulated weather data."""
    weather = {
        "location": "San Francisco, CA",
        "temperature": 68,
        "temperatureUnit": "F",
        "conditions": "Partly Cloudy",
        "humidity": 65,
        "windSpeed": 12,
        "windUnit": "mph",
        "forecast": [
            {"day": "Today", "high": 70, "low": 55, "conditions": "Partly Cloudy"},
            {"day": "Tomorrow", "high": 72, "low": 57, "conditions": "Sunny"},
            {"day": "Day After", "high": 68, "low": 54, "conditions": "Foggy"},
        ],
        "timestamp": _now(),
    }
    logger.info(f"Weather served to {payment.payer}")
    return ServiceResponse(data=weather, message="Weather data retrieved successfully", payment=_receipt(payment))


@router.post("/api/compute", response_model=ServiceResponse, tags=["paid"])
async def compute(
    body: Optional[ComputeRequest] = None,
    payment: PaymentContext = Depends(get_payment_context),
) -> ServiceResponse:
    """Simulated computation."""
    body = body or ComputeRequest()
    result = {
        "operationId": f"op_{_millis()}",
        "operation": body.operation or "default_compute",
        "input": jsonable_encoder(body.input),
        "parameters": body.parameters,
        "result": {
            "status": "completed",
            "output": {"computed": True, "value": random.random() * 1000, "precision": 6},
        },
        "billingInfo": {"computeUnits": 1},
        "completedAt": _now(),
    }
    return ServiceResponse(data=result, message="Computation completed successfully", payment=_receipt(payment))


@router.post("/api/ai/image", response_model=ServiceResponse, tags=["paid"])
async def generate_image(
    body: Optional[ImageRequest] = None,
    payment: PaymentContext = Depends(get_payment_context),
) -> ServiceResponse:
    """Simulated AI image generation."""
    body = body or ImageRequest()
    request_id = _millis()
    image = {
        "requestId": f"img_{request_id}",
        "prompt": body.prompt,
        "style": body.style,
        "size": body.size,
        "imageUrl": f"https://placeholder.heurist.ai/generated/{request_id}.png",
        "metadata": {
            "model": "heurist-diffusion-v1",
            "steps": 50,
            "guidance": 7.5,
            "seed": random.randint(0, 999999),
        },
        "generatedAt": _now(),
    }
    return ServiceResponse(data=image, message="Image generated successfully", payment=_receipt(payment))


@router.post("/api/agent/task", response_model=ServiceResponse, tags=["paid"])
async def run_agent_task(
    body: Optional[AgentTaskRequest] = None,
    payment: PaymentContext = Depends(get_payment_context),
) -> ServiceResponse:
    """Simulated agent task execution."""
    body = body or AgentTaskRequest()
    task = {
        "taskId": f"task_{_millis()}",
        "taskType": body.taskType,
        "instructions": body.instructions,
        "context": body.context,
        "result": {
            "status": "completed",
            "output": {
                "response": "Task executed successfully by Daydreams agent",
                "actions": ["analyzed_input", "processed_request", "generated_response"],
                "confidence": 0.92,
            },
        },
        "completedAt": _now(),
    }
    return ServiceResponse(data=task, message="Agent task completed successfully", payment=_receipt(payment))
