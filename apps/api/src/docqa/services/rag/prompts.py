"""Prompt template for grounded answers.

The model must answer only from the retrieved context and fall back to
``NO_ANSWER_MESSAGE`` verbatim when the context does not cover the question.
"""

from __future__ import annotations

from docqa.llm import Message

NO_ANSWER_MESSAGE = "I cannot answer this question from the available documents."

SYSTEM_PROMPT = f"""\
You are a precise question-answering assistant for a document library.

Rules:
1. Answer strictly from the information in the context section.
2. Do not use outside knowledge and do not guess.
3. If the context does not address the question, reply with exactly:
   {NO_ANSWER_MESSAGE}
"""

USER_PROMPT_TEMPLATE = """\
Context:
{context}

Question:
{question}
"""


def format_context(texts: list[str]) -> str:
    return "\n\n".join(texts)


def build_rag_messages(question: str, context: str) -> list[Message]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": USER_PROMPT_TEMPLATE.format(context=context, question=question)},
    ]
