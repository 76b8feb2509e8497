from models import ConditionOperator, StepType, TriggerType

from .registry import Registry


def create_default_registries() -> dict[str, Registry]:
    """Create the registries for triggers, steps and condition operators."""
    trigger_registry = Registry(name="trigger")
    trigger_registry.register(TriggerType.CONTACT_CREATED, "Contact Created")
    trigger_registry.register(TriggerType.TICKET_PURCHASED, "Ticket Purchased")
    trigger_registry.register(TriggerType.CHECKED_IN, "Checked In")
    trigger_registry.register(TriggerType.TAG_ADDED, "Tag Added")
    trigger_registry.register(TriggerType.CONSENT_GIVEN, "Consent Given")
    trigger_registry.register(TriggerType.SCHEDULED_DATE, "Scheduled Date")
    trigger_registry.register(TriggerType.TALK_SUBMITTED, "Talk Submitted")
    trigger_registry.register(TriggerType.TALK_ACCEPTED, "Talk Accepted")
    trigger_registry.register(TriggerType.TALK_REJECTED, "Talk Rejected")

    step_registry = Registry(name="step")
    step_registry.register(StepType.SEND_EMAIL, "Send Email")
    step_registry.register(StepType.WAIT, "Wait")
    step_registry.register(StepType.CONDITION, "Condition")
    step_registry.register(StepType.ADD_TAG, "Add Tag")
    step_registry.register(StepType.REMOVE_TAG, "Remove Tag")
    step_registry.register(StepType.UPDATE_FIELD, "Update Field")
    step_registry.register(StepType.WEBHOOK, "Webhook")

    operator_registry = Registry(name="operator")
    operator_registry.register(ConditionOperator.EQUALS, "Equals")
    operator_registry.register(ConditionOperator.NOT_EQUALS, "Does not equal")
    operator_registry.register(ConditionOperator.CONTAINS, "Contains")
    operator_registry.register(ConditionOperator.NOT_CONTAINS, "Does not contain")
    operator_registry.register(ConditionOperator.GREATER_THAN, "Greater than")
    operator_registry.register(ConditionOperator.LESS_THAN, "Less than")
    operator_registry.register(ConditionOperator.IS_SET, "Is set")
    operator_registry.register(ConditionOperator.IS_NOT_SET, "Is not set")
    operator_registry.register(ConditionOperator.HAS_TAG, "Has tag")
    operator_registry.register(ConditionOperator.NOT_HAS_TAG, "Does not have tag")
    operator_registry.register(ConditionOperator.IN_SEGMENT, "Is in segment")
    operator_registry.register(ConditionOperator.NOT_IN_SEGMENT, "Is not in segment")

    return {
        "trigger": trigger_registry,
        "step": step_registry,
        "operator": operator_registry,
    }
