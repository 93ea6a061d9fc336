"""Layer identifiers, execution modes and the per-layer action catalog.

Each backend layer accepts a closed set of actions. A step naming an
action its layer does not declare is rejected when the graph is validated,
before anything is dispatched.
"""

from enum import Enum


class LayerType(Enum):
    """Backend executor a step is bound to."""

    CLAUDE = "claude"
    """Reasoning CLI."""

    GEMINI = "gemini"
    """Search/grounding CLI."""

    AISTUDIO = "aistudio"
    """Multimodal HTTP API."""

    @classmethod
    def parse(cls, value: "LayerType | str") -> "LayerType":
        if isinstance(value, LayerType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown layer '{value}'. Expected one of: {', '.join(m.value for m in cls)}"
            ) from None

    def __str__(self) -> str:
        return self.value


class ExecutionMode(Enum):
    """How the scheduler walks the phases of a graph."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    ADAPTIVE = "adaptive"

    @classmethod
    def parse(cls, value: "ExecutionMode | str") -> "ExecutionMode":
        if isinstance(value, ExecutionMode):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unknown execution mode '{value}'. "
                f"Expected one of: {', '.join(m.value for m in cls)}"
            ) from None

    def __str__(self) -> str:
        return self.value


class ClaudeAction(Enum):
    COMPLEX_REASONING = "complex_reasoning"
    ANALYZE_REQUIREMENTS = "analyze_requirements"
    SYNTHESIZE_RESULTS = "synthesize_results"
    ANALYZE_CONVERSION_REQUIREMENTS = "analyze_conversion_requirements"
    PLAN_EXTRACTION = "plan_extraction"
    STRUCTURE_EXTRACTED_DATA = "structure_extracted_data"
    DEVELOP_GENERATION_STRATEGY = "develop_generation_strategy"
    EXECUTE = "execute"


class GeminiAction(Enum):
    GROUNDED_SEARCH = "grounded_search"
    CONTEXTUAL_ANALYSIS = "contextual_analysis"
    ANALYZE_WITH_GROUNDING = "analyze_with_grounding"
    VALIDATE_CONVERSION = "validate_conversion"
    MULTIMODAL = "multimodal"
    EXECUTE = "execute"


class AIStudioAction(Enum):
    PROCESS_MULTIMODAL = "process_multimodal"
    PROCESS_DOCUMENTS = "process_documents"
    CONVERT_FILES = "convert_files"
    EXTRACT_DATA = "extract_data"
    ANALYZE_SOURCE_CONTENT = "analyze_source_content"
    GENERATE_CONTENT = "generate_content"
    GENERATE_IMAGE = "generate_image"
    GENERATE_AUDIO = "generate_audio"


LAYER_ACTIONS: dict[LayerType, type[Enum]] = {
    LayerType.CLAUDE: ClaudeAction,
    LayerType.GEMINI: GeminiAction,
    LayerType.AISTUDIO: AIStudioAction,
}


def supported_actions(layer: LayerType) -> frozenset[str]:
    """Action names accepted by a layer."""
    return frozenset(member.value for member in LAYER_ACTIONS[layer])


def is_supported_action(layer: LayerType, action: str) -> bool:
    return action in supported_actions(layer)


__all__ = [
    "LayerType",
    "ExecutionMode",
    "ClaudeAction",
    "GeminiAction",
    "AIStudioAction",
    "LAYER_ACTIONS",
    "supported_actions",
    "is_supported_action",
]
