from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


Role = Literal["user", "assistant", "system"]
Mode = Literal["chat", "search", "research", "code", "voice", "vision"]
CodeOperation = Literal["analyze", "edit", "create", "refactor"]
ResearchStepType = Literal["thinking", "analysis", "synthesis", "conclusion"]

CODE_OPERATIONS = ("analyze", "edit", "create", "refactor")
TERMINAL_EVENT_TYPES = {"done", "error"}


class ChatMessage(BaseModel):
    role: Role
    content: str
    image_data: Optional[str] = Field(default=None, alias="imageData")

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class FileContext(BaseModel):
    path: str
    content: str
    language: Optional[str] = None


class VoiceSettings(BaseModel):
    voice_id: Optional[str] = Field(default=None, alias="voiceId")
    stability: float = 0.5
    similarity_boost: float = Field(default=0.75, alias="similarityBoost")
    style: float = 0.5
    use_speaker_boost: bool = Field(default=True, alias="useSpeakerBoost")

    model_config = ConfigDict(populate_by_name=True)


class OrchestrationRequest(BaseModel):
    messages: List[ChatMessage]
    model: str = ""
    mode: Mode = "chat"
    temperature: Optional[float] = None
    max_tokens: Optional[int] = Field(default=None, alias="maxTokens")
    files: List[FileContext] = Field(default_factory=list)
    operation: Optional[CodeOperation] = None
    voice_settings: Optional[VoiceSettings] = Field(default=None, alias="voiceSettings")
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    user_id: Optional[str] = Field(default=None, alias="userId")

    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    def last_user_message(self) -> Optional[ChatMessage]:
        for message in reversed(self.messages):
            if message.role == "user":
                return message
        return None


class SpeechRequest(BaseModel):
    text: str
    voice_settings: Optional[VoiceSettings] = Field(default=None, alias="voiceSettings")

    model_config = ConfigDict(populate_by_name=True)


class ResearchStep(BaseModel):
    type: ResearchStepType
    title: str
    content: str


# Outbound events. `to_wire` is the JSON object written for each event.


class _Event(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class StatusEvent(_Event):
    type: Literal["status"] = "status"
    message: str


class ChunkEvent(_Event):
    type: Literal["chunk"] = "chunk"
    content: str


class DoneEvent(_Event):
    type: Literal["done"] = "done"


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    message: str


class FileEvent(_Event):
    type: Literal["file_edit", "file_create"]
    path: str
    content: str
    language: str


class ResearchStepEvent(_Event):
    type: Literal["research_step"] = "research_step"
    step_type: str = Field(alias="stepType")
    message: str


class ResearchCompleteEvent(_Event):
    type: Literal["research_complete"] = "research_complete"
    content: str
    steps: List[ResearchStep]
    confidence: int


class AudioEvent(_Event):
    type: Literal["audio"] = "audio"
    data: str
    text: str


class CodeStepEvent(_Event):
    type: Literal["code_step"] = "code_step"
    step: str
    message: str


class CodeAnalysisEvent(_Event):
    type: Literal["code_analysis"] = "code_analysis"
    content: str
    files: List[str]


class RefactorPlanEvent(_Event):
    type: Literal["refactor_plan"] = "refactor_plan"
    content: str


StreamEvent = Union[
    StatusEvent,
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    FileEvent,
    ResearchStepEvent,
    ResearchCompleteEvent,
    AudioEvent,
    CodeStepEvent,
    CodeAnalysisEvent,
    RefactorPlanEvent,
]
