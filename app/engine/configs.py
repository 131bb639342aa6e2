"""
Typed trigger and action configs.

Rules are stored with open JSON maps (trigger_config / action_config).
Each trigger or action type has a pydantic model here; the maps are
validated against it when a rule is saved and again when it is dispatched.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    field_validator,
    model_validator,
)

from app.engine.errors import ConfigValidationError
from app.engine import stages

# Action types
SEND_MESSAGE = "send_message"
SEND_TEMPLATE = "send_template"
ADD_TAG = "add_tag"
REMOVE_TAG = "remove_tag"
MOVE_STAGE = "move_stage"
NOTIFY_USER = "notify_user"
TRIGGER_CHATBOT_FLOW = "trigger_chatbot_flow"
SET_CUSTOM_FIELD = "set_custom_field"
SET_DEAL_VALUE = "set_deal_value"
CHANGE_RESPONSIBLE = "change_responsible"
ADD_NOTE = "add_note"
WEBHOOK_REQUEST = "webhook_request"
CREATE_TASK = "create_task"
CLOSE_DEAL_WON = "close_deal_won"
CLOSE_DEAL_LOST = "close_deal_lost"
AI_ANALYZE_AND_MOVE = "ai_analyze_and_move"
SEND_FORM_LINK = "send_form_link"

# Actions that write to the deal row; the dispatcher reloads the deal after them.
DEAL_MUTATING_ACTIONS: frozenset[str] = frozenset([
    MOVE_STAGE,
    SET_CUSTOM_FIELD,
    SET_DEAL_VALUE,
    CLOSE_DEAL_WON,
    CLOSE_DEAL_LOST,
    AI_ANALYZE_AND_MOVE,
])


class _Config(BaseModel):
    model_config = ConfigDict(extra="ignore")


RequiredText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


# ---------------------------------------------------------------------------
# Trigger configs
# ---------------------------------------------------------------------------

class EmptyTriggerConfig(_Config):
    pass


class KeywordTriggerConfig(_Config):
    keywords: Union[str, list[str]] = ""

    @model_validator(mode="after")
    def _has_keywords(self) -> "KeywordTriggerConfig":
        if not self.keyword_list():
            raise ValueError("keywords must list at least one keyword")
        return self

    def keyword_list(self) -> list[str]:
        raw = self.keywords.split(",") if isinstance(self.keywords, str) else self.keywords
        return [k.strip().lower() for k in raw if k and k.strip()]


class TagTriggerConfig(_Config):
    tag_name: RequiredText


class CustomFieldTriggerConfig(_Config):
    field_key: RequiredText


class WebhookTriggerConfig(_Config):
    # Inbound calls must present this token when set.
    security_token: Optional[str] = None


TRIGGER_CONFIG_MODELS: dict[str, type[_Config]] = {
    stages.ON_KEYWORD_RECEIVED: KeywordTriggerConfig,
    stages.ON_TAG_ADDED: TagTriggerConfig,
    stages.ON_TAG_REMOVED: TagTriggerConfig,
    stages.ON_CUSTOM_FIELD_CHANGED: CustomFieldTriggerConfig,
    stages.ON_WEBHOOK: WebhookTriggerConfig,
}


# ---------------------------------------------------------------------------
# Action configs
# ---------------------------------------------------------------------------

class SendMessageConfig(_Config):
    message: str = ""


DEFAULT_FORM_LINK_MESSAGE = "Olá {{nome}}! Por favor, preencha o formulário: {{link}}"


class FormLinkParam(_Config):
    key: str = ""
    value: str = ""


class SendFormLinkConfig(_Config):
    form_id: str = Field(min_length=1)
    message: str = DEFAULT_FORM_LINK_MESSAGE
    # Each value may use template variables; empty keys or values are dropped.
    params: list[FormLinkParam] = Field(default_factory=list)


class SendTemplateConfig(_Config):
    template_id: Optional[str] = None


class TagActionConfig(_Config):
    tag_id: Optional[str] = None
    tag_name: Optional[str] = None


class MoveStageConfig(_Config):
    target_stage_id: str = Field(min_length=1)


class NotifyUserConfig(_Config):
    user_id: Optional[str] = None
    message: str = ""


class TriggerChatbotFlowConfig(_Config):
    flow_id: str = Field(min_length=1)


class SetCustomFieldConfig(_Config):
    field_key: str = Field(min_length=1)
    field_value: Any = None


class SetDealValueConfig(_Config):
    value: Decimal = Field(ge=0)


class ChangeResponsibleConfig(_Config):
    responsible_id: Optional[str] = None


class AddNoteConfig(_Config):
    note_content: str = ""


class WebhookRequestConfig(_Config):
    webhook_url: str = Field(min_length=1)
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("webhook_url")
    @classmethod
    def _http_url(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("webhook_url must be an http(s) URL")
        return value


class CreateTaskConfig(_Config):
    task_title: str = ""
    task_description: str = ""
    due_days: int = Field(default=1, ge=0)
    priority: str = "normal"


class CloseDealConfig(_Config):
    close_reason_id: Optional[str] = None


class IntentMapping(_Config):
    intent: str = Field(min_length=1)
    target_stage_id: str = Field(min_length=1)


class AiAnalyzeAndMoveConfig(_Config):
    intent_mappings: list[IntentMapping] = Field(default_factory=list)
    default_stage_id: Optional[str] = None


ACTION_CONFIG_MODELS: dict[str, type[_Config]] = {
    SEND_MESSAGE: SendMessageConfig,
    SEND_TEMPLATE: SendTemplateConfig,
    SEND_FORM_LINK: SendFormLinkConfig,
    ADD_TAG: TagActionConfig,
    REMOVE_TAG: TagActionConfig,
    MOVE_STAGE: MoveStageConfig,
    NOTIFY_USER: NotifyUserConfig,
    TRIGGER_CHATBOT_FLOW: TriggerChatbotFlowConfig,
    SET_CUSTOM_FIELD: SetCustomFieldConfig,
    SET_DEAL_VALUE: SetDealValueConfig,
    CHANGE_RESPONSIBLE: ChangeResponsibleConfig,
    ADD_NOTE: AddNoteConfig,
    WEBHOOK_REQUEST: WebhookRequestConfig,
    CREATE_TASK: CreateTaskConfig,
    CLOSE_DEAL_WON: CloseDealConfig,
    CLOSE_DEAL_LOST: CloseDealConfig,
    AI_ANALYZE_AND_MOVE: AiAnalyzeAndMoveConfig,
}

ACTION_TYPES: frozenset[str] = frozenset(ACTION_CONFIG_MODELS)


def _format_errors(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "config"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


def parse_trigger_config(trigger_type: str, raw: Optional[dict[str, Any]]) -> _Config:
    if trigger_type not in stages.TRIGGER_TYPES:
        raise ConfigValidationError(f"Unknown trigger type: {trigger_type}")
    model = TRIGGER_CONFIG_MODELS.get(trigger_type, EmptyTriggerConfig)
    try:
        return model.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid {trigger_type} config: {_format_errors(e)}") from e


def parse_action_config(action_type: str, raw: Optional[dict[str, Any]]) -> _Config:
    model = ACTION_CONFIG_MODELS.get(action_type)
    if model is None:
        raise ConfigValidationError(f"Unknown action type: {action_type}")
    try:
        return model.model_validate(raw or {})
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid {action_type} config: {_format_errors(e)}") from e


def validate_rule_configs(
    trigger_type: str,
    trigger_config: Optional[dict[str, Any]],
    action_type: str,
    action_config: Optional[dict[str, Any]],
) -> tuple[dict[str, Any], dict[str, Any]]:
    """Validate both maps at save time; returns the normalised JSON-ready maps."""
    trigger = parse_trigger_config(trigger_type, trigger_config)
    action = parse_action_config(action_type, action_config)
    return trigger.model_dump(mode="json"), action.model_dump(mode="json")
