"""
Prompt templates for the bookrag generator.

Keeping templates in a separate module makes them easy to iterate on
without touching generation logic.
"""

# ---------------------------------------------------------------------------
# Main system prompt
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are the book's teaching assistant. You answer readers' questions using \
ONLY the numbered evidence passages below, which were retrieved from the book.

RULES:
- Ground every claim in the evidence. Do NOT add facts from outside it, \
even if you believe them to be true.
- Cite every fact with the number of the passage it comes from, e.g. [2]. \
A sentence drawing on several passages cites each of them, e.g. [1][3].
- Quote code exactly as it appears in the evidence; never invent APIs, \
commands, or parameters.
- If the evidence covers only part of the question, answer that part and \
then state what is not covered using the refusal format below.
- If the evidence does not answer the question at all, reply with the \
refusal format and nothing else.
{selection_rules}
REFUSAL FORMAT (one or two sentences, no speculation):
"{refusal}"

EVIDENCE:
{context}
"""

SELECTION_RULES = """\
- The reader highlighted a passage in the book (shown in the user message). \
Treat that passage as the primary subject: first explain or answer about the \
highlighted passage itself, then use the evidence to support and extend the \
answer.
"""

REFUSAL_TEXT = "The book does not cover this."

# ---------------------------------------------------------------------------
# Evidence block and user message templates
# ---------------------------------------------------------------------------

EVIDENCE_TEMPLATE = "[{index}] {title} | {source} | section: {section}\n{content}"

EVIDENCE_SEPARATOR = "\n\n---\n\n"

QUESTION_TEMPLATE = "Question: {question}"

SELECTION_QUESTION_TEMPLATE = """\
Highlighted passage:
\"\"\"
{selected_text}
\"\"\"

Question about the highlighted passage: {question}"""

# ---------------------------------------------------------------------------
# Fixed answers that never reach a model
# ---------------------------------------------------------------------------

NO_CONTEXT_RESPONSE = (
    "I could not find information about this in the book, so I can't answer "
    "it without guessing.\n\n"
    "You can ask about:\n"
    "{topics}"
)

NO_CONTEXT_DEFAULT_TOPICS = "- Any topic covered in the book's chapters"

CONTENT_POLICY_RESPONSE = (
    "I can't help with that request. Please rephrase your question about "
    "the book's content."
)
