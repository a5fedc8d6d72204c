"""
Metered AI actions.

POST /v1/wod/{action} runs one billable generation: entitlement check,
provider call, then the credit charge for credit-funded requests.
The request is tagged for the usage middleware whatever the outcome.
"""

from fastapi import APIRouter, Depends, Request

from core.auth import get_current_active_user
from core.dependencies import get_metered_action_service
from models import User
from schemas import MeteredActionRequest, MeteredActionResponse
from services.entitlements import get_metered_action
from services.metered_actions import MeteredActionService

router = APIRouter(prefix="/v1/wod", tags=["wod"])


@router.post("/{action}", response_model=MeteredActionResponse)
def run_action(
    action: str,
    body: MeteredActionRequest,
    request: Request,
    current_user: User = Depends(get_current_active_user),
    service: MeteredActionService = Depends(get_metered_action_service),
):
    metered = get_metered_action(action)
    request.state.usage = {"action": metered.key, "category": metered.category}

    outcome = service.execute(
        current_user.id,
        action,
        body.payload,
        profile=current_user.fitness_profile,
    )

    request.state.usage.update({
        "provider": outcome.provider_used,
        "metadata": {
            "plan_id": outcome.decision.plan_id,
            "funded_by": outcome.decision.funded_by.value,
            "generation_ms": outcome.latency_ms,
            **outcome.tokens_or_cost_hint,
        },
    })
    return outcome.to_dict()
