"""Prompt templates for the system prompt and automatic follow-up turns.

Placeholders use the ``{{VARIABLE}}`` form filled by
``dataloop.prompts.inject_context``.
"""

SYSTEM_PROMPT = """You are a careful data analyst working on the user's dataset.

## Dataset

{{DATASET}}

## Running code

- Put code you want executed in a fenced block tagged `python` (or `sql`
  to query table `data` directly).
- In Python, `df` is the dataset as a pandas DataFrame and `query(sql)`
  runs SQL against table `data` and returns a DataFrame.
- The value of a block is its last expression, or the variable `result`.
- Variables persist between blocks, so later blocks may use earlier ones.
- Write the code, then STOP. Execution results arrive in the next message.
- Never invent results. Never repeat code that already ran.
{{DEPTH_BUDGET}}"""

DEPTH_BUDGET = """
## Follow-up budget

Automatic follow-ups allowed: {{MAX_DEPTH}}. Used so far: {{DEPTH}}.
Remaining: {{REMAINING}}. Plan to answer before the budget runs out."""

FOLLOWUP = """CODE EXECUTION COMPLETE

**Code executed:**
{{CODE_SECTION}}

**Results:**
{{RESULTS_SECTION}}

**User's original question:** "{{QUESTION}}"

## Your task now

Read the results above before doing anything else.

- If the results answer the question: state the answer using them. Do not
  write more code.
- If the results are incomplete: write ONLY the code for what is missing.

Do not re-run code that already ran. Do not ignore the results and start
over.{{FAILED_NOTE}}{{FINAL_NOTE}}"""

FAILED_NOTE = """

Note: {{FAILED_COUNT}} block(s) failed. The results shown come from the
successful blocks only."""

FINAL_NOTE = """

**THIS IS YOUR FINAL FOLLOW-UP.** Give your complete analysis from the
available results. Do not suggest additional code."""

ERROR_FIX = """CODE EXECUTION ERROR REPORT

Succeeded ({{SUCCESS_COUNT}} block(s), do NOT recreate these):
{{SUCCESS_SECTION}}

Failed ({{FAILED_COUNT}} block(s), fix ONLY these):

{{FAILED_SECTION}}

## Fix instructions

1. Provide corrected code only for the failed block(s) above.
2. Variables from successful blocks are still defined; use them.
3. Use only column names that exist in the dataset.
4. End each block with an expression or assign `result`.{{LAST_FIX_NOTE}}"""

LAST_FIX_NOTE = """

This is the last automatic attempt: make the fix complete and
self-contained."""

FAILED_BLOCK = """**Failed block {{INDEX}}:**
```python
{{CODE}}
```

**Error:** {{ERROR}}{{HINT}}"""

UNDEFINED_NAME_HINT = """

Name error: `{{NAME}}` is not defined. If an earlier block created it, that
block may have failed; define it in this block instead. If it is meant to be
a column, use the exact column name from the dataset."""

CLARIFY = """MULTIPLE CONSECUTIVE FAILURES DETECTED

There have been {{FAILURE_COUNT}} consecutive rounds of failing code.
Do not attempt another fix yet.

**Errors encountered:**
{{ERRORS}}

**Your task:** ask the user these clarifying questions, briefly and kindly:
1. Which data or columns do you want to use? Are the column names right?
2. Are there constraints or special requirements to respect?
3. What outcome or result do you expect?
4. Can you share an example or sample of the data that shows the task?

Wait for the user's answers before writing any more code."""

ANALYZE = """CODE ALREADY EXECUTED

The code you just proposed already ran successfully in this conversation.
It was not executed again.

**Existing results:**
{{RESULTS_SECTION}}

**User's original question:** "{{QUESTION}}"

Analyze the existing results above to answer the question. Do not repeat
the same code.{{FINAL_NOTE}}"""

PROMPTS = {
    "system": SYSTEM_PROMPT,
    "depth_budget": DEPTH_BUDGET,
    "followup": FOLLOWUP,
    "failed_note": FAILED_NOTE,
    "final_note": FINAL_NOTE,
    "error_fix": ERROR_FIX,
    "last_fix_note": LAST_FIX_NOTE,
    "failed_block": FAILED_BLOCK,
    "undefined_name_hint": UNDEFINED_NAME_HINT,
    "clarify": CLARIFY,
    "analyze": ANALYZE,
}
