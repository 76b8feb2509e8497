from typing import Any, Dict

from pydantic import ValidationError

from errors import StepConfigError, TriggerConfigError
from models import Automation, Step, parse_step
from registry import Registry


class UnknownRegistryTypeError(ValueError):
    """Raised when an automation references an unknown trigger, step, or operator type."""


def _first_error(exc: ValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error['msg']}" if location else error["msg"]


def _validate_against_registries(automation: Automation, registries: Dict[str, Registry]) -> Automation:
    if automation.trigger_type not in registries["trigger"]:
        raise UnknownRegistryTypeError(f"Unknown trigger type: {automation.trigger_type}")
    return automation


def _validate_step_against_registries(step: Step, registries: Dict[str, Registry]) -> Step:
    if step.type not in registries["step"]:
        raise UnknownRegistryTypeError(f"Unknown step type: {step.type}")
    operator = getattr(step.config, "operator", None)
    if operator is not None and operator not in registries["operator"]:
        raise UnknownRegistryTypeError(f"Unknown condition operator: {operator}")
    return step


def parse_and_validate_automation(payload: dict, registries: Dict[str, Registry]) -> Automation:
    """
    Convert a dict into an Automation and validate registry membership.
    Raises TriggerConfigError or UnknownRegistryTypeError on failure.
    """
    try:
        automation = Automation.model_validate(payload)
    except ValidationError as exc:
        raise TriggerConfigError(_first_error(exc)) from exc
    return _validate_against_registries(automation, registries)


def parse_and_validate_step(payload: Dict[str, Any], registries: Dict[str, Registry]) -> Step:
    """
    Convert a dict into the step variant named by payload["type"].
    Raises StepConfigError or UnknownRegistryTypeError on failure.
    """
    try:
        step = parse_step(payload)
    except ValidationError as exc:
        raise StepConfigError(_first_error(exc)) from exc
    return _validate_step_against_registries(step, registries)
