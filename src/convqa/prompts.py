"""Prompt templates for condensing, answering and the conversational fallback.

Each answer template comes in two flavours: a default one carrying its own
"don't make up an answer" guard, and a bare body used when a system message is
configured, because the system message then owns that instruction.
"""
from __future__ import annotations

from langchain_core.prompts import PromptTemplate

CONDENSE_QUESTION_TEMPLATE = """Given the following conversation and a follow up question, rephrase the follow up question to be a standalone question, in its original language. Resolve any pronouns or references using the conversation.

Chat History:
{chat_history}
Follow Up Input: {question}
Standalone question:"""

DEFAULT_QA_TEMPLATE = """Use the following pieces of context to answer the question at the end. If you don't know the answer, just say that you don't know, don't try to make up an answer.

{context}

Question: {question}
Helpful Answer:"""

QA_TEMPLATE = """Use the following pieces of context to answer the question at the end.

{context}

Question: {question}
Helpful Answer:"""

MAP_TEMPLATE = """Use the following portion of a long document to see if any of the text is relevant to answer the question.
Return any relevant text verbatim.
{context}
Question: {question}
Relevant text, if any:"""

DEFAULT_COMBINE_TEMPLATE = """Given the following extracted parts of a long document and a question, create a final answer.
If you don't know the answer, just say that you don't know. Don't try to make up an answer.

{summaries}

Question: {question}
Helpful Answer:"""

COMBINE_TEMPLATE = """Given the following extracted parts of a long document and a question, create a final answer.

{summaries}

Question: {question}
Helpful Answer:"""

DEFAULT_REFINE_TEMPLATE = """The original question is as follows: {question}
We have provided an existing answer: {existing_answer}
We have the opportunity to refine the existing answer (only if needed) with some more context below.
------------
{context}
------------
Given the new context, refine the original answer to better answer the question. If the context isn't useful, return the original answer."""

REFINE_TEMPLATE = """The original question is as follows: {question}
We have provided an existing answer: {existing_answer}
Refine the existing answer (only if needed) with the context below.
------------
{context}
------------
Refined answer:"""

DEFAULT_CONVERSATION_TEMPLATE = """Given the following conversation and a follow up question, answer the question at the end. If the AI does not know the answer to a question, it truthfully says it does not know.

Chat History:
{chat_history}

Question: {question}
Helpful Answer:"""

CONVERSATION_TEMPLATE = """Given the following conversation and a follow up question, answer the question at the end.

Chat History:
{chat_history}

Question: {question}
Helpful Answer:"""


def with_system_message(system_message: str | None, template: str, default_template: str) -> PromptTemplate:
    """Prefix ``template`` with the system message, or fall back to ``default_template``."""

    if system_message:
        escaped = system_message.replace("{", "{{").replace("}", "}}")
        return PromptTemplate.from_template(f"{escaped}\n{template}")
    return PromptTemplate.from_template(default_template)


condense_question_prompt = PromptTemplate.from_template(CONDENSE_QUESTION_TEMPLATE)
