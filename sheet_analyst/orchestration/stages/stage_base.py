# sheet_analyst/orchestration/stages/stage_base.py

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

from langchain_core.exceptions import OutputParserException
from langchain_core.output_parsers import PydanticOutputParser
from langchain_core.prompts import PromptTemplate
from langchain_core.runnables import Runnable
from pydantic import BaseModel

from sheet_analyst.backends.model_gateway import get_llm
from sheet_analyst.errors import InferenceError
from sheet_analyst.orchestration.session_state import TurnState

_log = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_TRANSIENT_MARKERS = ("503", "service unavailable", "unavailable", "overloaded", "429", "resource exhausted")


def is_transient_failure(exc: BaseException) -> bool:
    """True when the error text looks like a temporary service outage."""
    text = f"{type(exc).__name__} {exc}".lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


class BaseNode(ABC):
    """
    Abstract base for orchestration stages.

    - Uses the injected LLM, or the shared one from the model gateway
    - Provides a resilient prompt loader
    - Runs prompt -> LLM -> structured parser and maps failures to InferenceError
    """

    def __init__(self, llm: Optional[Runnable] = None) -> None:
        if llm is None:
            _log.info("Stage bootstrap: acquiring shared LLM client.")
            llm = get_llm()
        self.llm = llm

    def _load_prompt(self, template_name: str) -> str:
        """
        Load a prompt template by name from the packaged instructions folder,
        with a filesystem fallback.
        """
        import importlib.resources as pkg_resources

        try:
            # Primary: load from the packaged instructions module
            from sheet_analyst.orchestration import instructions as _instr_pkg

            _log.debug("Loading prompt template: %s", template_name)
            return pkg_resources.files(_instr_pkg).joinpath(template_name).read_text(encoding="utf-8")

        except FileNotFoundError:
            _log.error("Prompt not found in package: %s", template_name)
            raise

        except Exception as exc:
            # Fallback: compute the on-disk path relative to this file
            _log.warning("Pkg resource load failed (%s); trying filesystem fallback.", exc)
            fallback = Path(__file__).resolve().parents[1] / "instructions" / template_name
            _log.info("Fallback prompt path: %s", fallback)
            return fallback.read_text(encoding="utf-8")

    def _render_inputs(self, inputs: BaseModel) -> Dict[str, Any]:
        """
        Prompt variables keyed by the input model's field aliases.
        Non-string values are rendered as JSON.
        """
        return {
            key: value if isinstance(value, str) else json.dumps(value, default=str, indent=2)
            for key, value in inputs.model_dump(by_alias=True).items()
        }

    async def _ask_model(
        self,
        template_name: str,
        inputs: BaseModel,
        output_model: Type[ModelT],
    ) -> ModelT:
        """
        Render the template with `inputs`, call the LLM and parse its JSON answer.

        Raises:
            InferenceError: the model failed or produced unparseable output.
        """
        parser = PydanticOutputParser(pydantic_object=output_model)
        prompt = PromptTemplate.from_template(self._load_prompt(template_name))
        chain = prompt | self.llm | parser

        try:
            _log.debug("Dispatching %s to LLM.", template_name)
            return await chain.ainvoke(
                {**self._render_inputs(inputs), "format_instructions": parser.get_format_instructions()}
            )
        except OutputParserException as exc:
            _log.error("Unparseable LLM output for %s: %s", template_name, exc)
            raise InferenceError(f"The model returned malformed output: {exc}") from exc
        except Exception as exc:
            transient = is_transient_failure(exc)
            _log.error("LLM call failed for %s (transient=%s): %s", template_name, transient, exc, exc_info=True)
            raise InferenceError(str(exc), transient=transient) from exc

    @abstractmethod
    async def __call__(self, state: TurnState) -> TurnState:
        """
        Process the turn state and return the keys this stage updates.
        Concrete stages must implement this.
        """
        raise NotImplementedError("Stages must implement __call__")
