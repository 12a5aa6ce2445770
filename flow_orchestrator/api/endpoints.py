"""FastAPI REST endpoints for the flow orchestration engine."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from ..core.exceptions import FlowEngineError, NotFoundError, create_error_response
from ..core.flow_engine import FlowEngine
from ..core.flow_selector import FlowSelector
from ..core.invocation_guard import InvocationGuard
from ..core.logging import get_logger
from ..core.middleware import status_code_for_error
from ..models.core import (
    DefinitionFilter,
    FlowDefinition,
    FlowExecutionLog,
    FlowInstance,
    FlowStatus,
    InstanceFilter,
    LogFilter,
    LogStatus,
    SelectionStrategy,
    ValidationResult,
    utcnow,
)

logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1/flows", tags=["flows"])


def get_orchestrator(request: Request):
    """Dependency to get the orchestrator the application lifespan built."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Flow orchestrator not initialized"
        )
    return orchestrator


def get_flow_engine(orchestrator=Depends(get_orchestrator)) -> FlowEngine:
    """Dependency to get the flow engine."""
    return orchestrator.engine


def get_flow_selector(orchestrator=Depends(get_orchestrator)) -> FlowSelector:
    """Dependency to get the flow selector."""
    return orchestrator.selector


def get_invocation_guard(orchestrator=Depends(get_orchestrator)) -> Optional[InvocationGuard]:
    return orchestrator.guard


def _http_error(error: Exception, action: str) -> HTTPException:
    """Map an exception raised while handling a request to an HTTPException."""
    if isinstance(error, FlowEngineError):
        logger.warning(f"Flow engine error while {action}: {str(error)}")
        return HTTPException(status_code=status_code_for_error(error), detail=create_error_response(error))

    logger.error(f"Unexpected error while {action}: {str(error)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(error)},
            "timestamp": utcnow().isoformat()
        }
    )


# Request/Response models

class CreateDefinitionRequest(BaseModel):
    """Request model for creating a flow definition."""
    definition: Dict[str, Any] = Field(..., description="Flow definition to create")


class CreateDefinitionResponse(BaseModel):
    """Response model for flow definition creation."""
    flow_id: str = Field(..., description="Identifier of the created flow definition")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Structural warnings")


class SetDefaultRequest(BaseModel):
    """Request model for marking a flow as default."""
    robot_id: Optional[str] = Field(None, description="Robot scope; defaults to the flow's own binding")


class CreateInstanceRequest(BaseModel):
    """Request model for creating a flow instance."""
    flow_definition_id: str = Field(..., description="ID of the flow definition to instantiate")
    trigger_data: Dict[str, Any] = Field(default_factory=dict, description="Trigger payload")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Caller metadata")
    execute: bool = Field(True, description="Start execution right away")
    wait: bool = Field(False, description="Wait for execution to finish before responding")


class CancelInstanceRequest(BaseModel):
    """Request model for cancelling a flow instance."""
    reason: Optional[str] = Field(None, description="Cancellation reason")


class TriggerRequest(BaseModel):
    """Request model for running the flows selected for a trigger."""
    robot_id: Optional[str] = Field(None, description="Robot that emitted the trigger")
    trigger_type: str = Field("webhook", description="Trigger type")
    trigger_data: Dict[str, Any] = Field(default_factory=dict, description="Trigger payload")
    strategy: Optional[SelectionStrategy] = Field(None, description="Selection strategy")
    flow_id: Optional[str] = Field(None, description="Flow id for the single strategy")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Caller metadata")
    wait: bool = Field(True, description="Wait for the selected flows to finish")


class TriggerResponse(BaseModel):
    """Response model for a trigger."""
    selected_count: int = Field(..., description="Number of flows selected")
    instances: List[FlowInstance] = Field(default_factory=list, description="Created instances")


class MessageResponse(BaseModel):
    """Plain message response."""
    message: str = Field(..., description="Result message")


# Flow definitions

@router.post(
    "/definitions",
    response_model=CreateDefinitionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a flow definition",
)
async def create_definition(
    request: CreateDefinitionRequest,
    engine: FlowEngine = Depends(get_flow_engine)
) -> CreateDefinitionResponse:
    """
    Create a new flow definition.

    Raises:
        HTTPException: 400 if the definition is invalid
    """
    try:
        definition = engine.create_flow_definition(request.definition)
        warnings = definition.validate_structure().warnings
        return CreateDefinitionResponse(
            flow_id=definition.id,
            message=f"Flow definition '{definition.name}' created successfully",
            validation_warnings=warnings,
        )
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e, "creating flow definition")


@router.post(
    "/definitions/validate",
    response_model=ValidationResult,
    summary="Validate a flow definition without storing it",
)
async def validate_definition(
    request: CreateDefinitionRequest,
    engine: FlowEngine = Depends(get_flow_engine)
) -> ValidationResult:
    try:
        return engine.validate_flow_definition(request.definition)
    except Exception as e:
        raise _http_error(e, "validating flow definition")


@router.get(
    "/definitions",
    response_model=List[FlowDefinition],
    summary="List flow definitions",
)
async def list_definitions(
    is_active: Optional[bool] = Query(None, description="Filter by active flag"),
    trigger_type: Optional[str] = Query(None, description="Filter by trigger type"),
    is_default: Optional[bool] = Query(None, description="Filter by default flag"),
    limit: int = Query(50, ge=1, le=500, description="Maximum number of definitions"),
    offset: int = Query(0, ge=0, description="Number of definitions to skip"),
    engine: FlowEngine = Depends(get_flow_engine)
) -> List[FlowDefinition]:
    try:
        return engine.list_flow_definitions(DefinitionFilter(
            is_active=is_active, trigger_type=trigger_type, is_default=is_default,
            limit=limit, offset=offset,
        ))
    except Exception as e:
        raise _http_error(e, "listing flow definitions")


@router.get(
    "/definitions/{flow_id}",
    response_model=FlowDefinition,
    summary="Get a flow definition",
)
async def get_definition(
    flow_id: str,
    engine: FlowEngine = Depends(get_flow_engine)
) -> FlowDefinition:
    try:
        definition = engine.get_flow_definition(flow_id)
        if definition is None:
            raise NotFoundError(f"Flow definition '{flow_id}' not found",
                                resource="flow_definition", resource_id=flow_id)
        return definition
    except Exception as e:
        raise _http_error(e, f"retrieving flow definition {flow_id}")


@router.patch(
    "/definitions/{flow_id}",
    response_model=FlowDefinition,
    summary="Update a flow definition",
)
async def update_definition(
    flow_id: str,
    patch: Dict[str, Any],
    engine: FlowEngine = Depends(get_flow_engine)
) -> FlowDefinition:
    try:
        return engine.update_flow_definition(flow_id, patch)
    except Exception as e:
        raise _http_error(e, f"updating flow definition {flow_id}")


@router.delete(
    "/definitions/{flow_id}",
    response_model=MessageResponse,
    summary="Delete a flow definition",
)
async def delete_definition(
    flow_id: str,
    engine: FlowEngine = Depends(get_flow_engine)
) -> MessageResponse:
    try:
        if not engine.delete_flow_definition(flow_id):
            raise NotFoundError(f"Flow definition '{flow_id}' not found",
                                resource="flow_definition", resource_id=flow_id)
        return MessageResponse(message=f"Flow definition '{flow_id}' deleted successfully")
    except Exception as e:
        raise _http_error(e, f"deleting flow definition {flow_id}")


@router.post(
    "/definitions/{flow_id}/default",
    response_model=FlowDefinition,
    summary="Mark a flow as the default for its robot and trigger",
)
async def set_default_definition(
    flow_id: str,
    request: SetDefaultRequest,
    selector: FlowSelector = Depends(get_flow_selector)
) -> FlowDefinition:
    try:
        return selector.set_default_flow(flow_id, request.robot_id)
    except Exception as e:
        raise _http_error(e, f"setting default flow {flow_id}")


# Selection

@router.get(
    "/default",
    response_model=FlowDefinition,
    summary="Get the default flow for a robot and trigger",
)
async def get_default_definition(
    trigger_type: str = Query("webhook", description="Trigger type"),
    robot_id: Optional[str] = Query(None, description="Robot id"),
    selector: FlowSelector = Depends(get_flow_selector)
) -> FlowDefinition:
    try:
        definition = selector.get_default_flow(robot_id, trigger_type)
        if definition is None:
            raise NotFoundError(f"No default flow for robot={robot_id} trigger={trigger_type}",
                                resource="flow_definition")
        return definition
    except Exception as e:
        raise _http_error(e, "retrieving default flow")


@router.get(
    "/select",
    response_model=List[FlowDefinition],
    summary="Preview which flows a trigger would run",
)
async def select_definitions(
    trigger_type: str = Query("webhook", description="Trigger type"),
    robot_id: Optional[str] = Query(None, description="Robot id"),
    strategy: SelectionStrategy = Query(SelectionStrategy.DEFAULT_FIRST, description="Selection strategy"),
    flow_id: Optional[str] = Query(None, description="Flow id for the single strategy"),
    selector: FlowSelector = Depends(get_flow_selector)
) -> List[FlowDefinition]:
    try:
        return selector.select_flows(robot_id, trigger_type, strategy, flow_id)
    except Exception as e:
        raise _http_error(e, "selecting flows")


@router.get("/strategies", summary="List selection strategies")
async def list_strategies(
    selector: FlowSelector = Depends(get_flow_selector)
) -> List[Dict[str, str]]:
    return selector.get_available_strategies()


@router.post(
    "/trigger",
    response_model=TriggerResponse,
    summary="Run the flows selected for a trigger",
)
async def trigger_flows(
    request: TriggerRequest,
    engine: FlowEngine = Depends(get_flow_engine)
) -> TriggerResponse:
    try:
        instances = await engine.trigger_flows(
            request.robot_id,
            request.trigger_type,
            request.trigger_data,
            strategy=request.strategy,
            flow_id=request.flow_id,
            metadata=request.metadata,
            wait=request.wait,
        )
        return TriggerResponse(selected_count=len(instances), instances=instances)
    except Exception as e:
        raise _http_error(e, "triggering flows")


# Flow instances

@router.post(
    "/instances",
    response_model=FlowInstance,
    status_code=status.HTTP_201_CREATED,
    summary="Create and optionally execute a flow instance",
)
async def create_instance(
    request: CreateInstanceRequest,
    engine: FlowEngine = Depends(get_flow_engine)
) -> FlowInstance:
    try:
        instance = engine.create_flow_instance(request.flow_definition_id, request.trigger_data,
                                               request.metadata)
        if request.execute and request.wait:
            await engine.execute_flow(instance.id)
        elif request.execute:
            engine.start_flow(instance.id)
        return engine.get_flow_instance(instance.id) or instance
    except Exception as e:
        raise _http_error(e, "creating flow instance")


@router.get(
    "/instances",
    response_model=List[FlowInstance],
    summary="List flow instances",
)
async def list_instances(
    flow_definition_id: Optional[str] = Query(None, description="Filter by flow definition"),
    status_filter: Optional[FlowStatus] = Query(None, alias="status", description="Filter by status"),
    limit: int = Query(50, ge=1, le=500, description="Maximum number of instances"),
    offset: int = Query(0, ge=0, description="Number of instances to skip"),
    engine: FlowEngine = Depends(get_flow_engine)
) -> List[FlowInstance]:
    try:
        return engine.list_flow_instances(InstanceFilter(
            flow_definition_id=flow_definition_id, status=status_filter, limit=limit, offset=offset,
        ))
    except Exception as e:
        raise _http_error(e, "listing flow instances")


@router.get(
    "/instances/{instance_id}",
    response_model=FlowInstance,
    summary="Get a flow instance",
)
async def get_instance(
    instance_id: str,
    engine: FlowEngine = Depends(get_flow_engine)
) -> FlowInstance:
    try:
        instance = engine.get_flow_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Flow instance '{instance_id}' not found",
                                resource="flow_instance", resource_id=instance_id)
        return instance
    except Exception as e:
        raise _http_error(e, f"retrieving flow instance {instance_id}")


@router.post(
    "/instances/{instance_id}/execute",
    response_model=FlowInstance,
    summary="Execute a pending flow instance",
)
async def execute_instance(
    instance_id: str,
    wait: bool = Query(True, description="Wait for execution to finish"),
    engine: FlowEngine = Depends(get_flow_engine)
) -> FlowInstance:
    try:
        if wait:
            await engine.execute_flow(instance_id)
        else:
            if engine.get_flow_instance(instance_id) is None:
                raise NotFoundError(f"Flow instance '{instance_id}' not found",
                                    resource="flow_instance", resource_id=instance_id)
            engine.start_flow(instance_id)
        return engine.get_flow_instance(instance_id)
    except Exception as e:
        raise _http_error(e, f"executing flow instance {instance_id}")


@router.post(
    "/instances/{instance_id}/cancel",
    response_model=FlowInstance,
    summary="Cancel a flow instance",
)
async def cancel_instance(
    instance_id: str,
    request: CancelInstanceRequest,
    engine: FlowEngine = Depends(get_flow_engine)
) -> FlowInstance:
    try:
        instance = engine.cancel_flow_instance(instance_id, request.reason)
        if instance is None:
            raise NotFoundError(f"Flow instance '{instance_id}' not found",
                                resource="flow_instance", resource_id=instance_id)
        return instance
    except Exception as e:
        raise _http_error(e, f"cancelling flow instance {instance_id}")


@router.get(
    "/instances/{instance_id}/logs",
    response_model=List[FlowExecutionLog],
    summary="Get the execution logs of a flow instance",
)
async def get_instance_logs(
    instance_id: str,
    node_id: Optional[str] = Query(None, description="Filter by node"),
    status_filter: Optional[LogStatus] = Query(None, alias="status", description="Filter by status"),
    limit: Optional[int] = Query(None, ge=1, le=5000, description="Maximum number of entries"),
    engine: FlowEngine = Depends(get_flow_engine)
) -> List[FlowExecutionLog]:
    try:
        if engine.get_flow_instance(instance_id) is None:
            raise NotFoundError(f"Flow instance '{instance_id}' not found",
                                resource="flow_instance", resource_id=instance_id)
        return engine.get_flow_execution_logs(LogFilter(
            flow_instance_id=instance_id, node_id=node_id, status=status_filter, limit=limit,
        ))
    except Exception as e:
        raise _http_error(e, f"retrieving logs of flow instance {instance_id}")


# Monitoring

@router.get("/handlers", summary="List registered node types")
async def list_handlers(engine: FlowEngine = Depends(get_flow_engine)) -> Dict[str, str]:
    return engine.registry.list_handlers()


@router.get("/statistics", summary="Engine and invocation guard statistics")
async def get_statistics(
    engine: FlowEngine = Depends(get_flow_engine),
    guard: Optional[InvocationGuard] = Depends(get_invocation_guard)
) -> Dict[str, Any]:
    try:
        statistics = engine.get_statistics()
        if guard is not None:
            statistics["guard"] = await guard.get_stats()
        return statistics
    except Exception as e:
        raise _http_error(e, "collecting statistics")
