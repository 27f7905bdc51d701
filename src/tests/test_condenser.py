import asyncio

import pytest
from langchain_core.messages import AIMessage, HumanMessage
from langchain_core.runnables import RunnableLambda

from convqa.condenser import QuestionCondenser, serialize_history
from convqa.errors import BackendError, ProtocolError
from fakes import ScriptedLLM

HISTORY = [HumanMessage(content="What is X?"), AIMessage(content="X is a database.")]


def test_empty_history_returns_question_without_generation():
    llm = ScriptedLLM("should not be used")
    condenser = QuestionCondenser(llm.runnable)

    assert condenser.condense("What is X?", []) == "What is X?"
    assert llm.prompts == []


def test_history_is_serialized_newest_last():
    assert serialize_history(HISTORY) == "human: What is X?\nassistant: X is a database."


def test_condense_uses_history_and_question():
    llm = ScriptedLLM(" What is X compared to Y? ")
    condenser = QuestionCondenser(llm.runnable)

    standalone = asyncio.run(condenser.acondense("And compared to Y?", HISTORY))

    assert standalone == "What is X compared to Y?"
    (prompt,) = llm.prompts
    assert "human: What is X?\nassistant: X is a database." in prompt
    assert "Follow Up Input: And compared to Y?" in prompt
    assert "original language" in prompt


def test_single_key_mapping_output_is_unwrapped():
    async def one_output(inputs):
        return {"text": "standalone"}

    condenser = QuestionCondenser(chain=RunnableLambda(one_output))

    assert condenser.condense("q", HISTORY) == "standalone"


def test_multiple_outputs_is_a_protocol_error():
    async def two_outputs(inputs):
        return {"text": "a", "question": "b"}

    condenser = QuestionCondenser(chain=RunnableLambda(two_outputs))

    with pytest.raises(ProtocolError, match="only single-output transforms are supported here"):
        condenser.condense("q", HISTORY)


def test_backend_failure_is_wrapped():
    async def broken(inputs):
        raise TimeoutError("model timed out")

    condenser = QuestionCondenser(chain=RunnableLambda(broken))

    with pytest.raises(BackendError):
        condenser.condense("q", HISTORY)


def test_sync_condense_inside_event_loop_raises():
    condenser = QuestionCondenser(ScriptedLLM().runnable)

    async def call_sync():
        return condenser.condense("And Y?", HISTORY)

    with pytest.raises(RuntimeError, match="await the async method"):
        asyncio.run(call_sync())
