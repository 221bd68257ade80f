"""Prompt templates for guideline alignment and similarity re-ranking.

Placeholders are filled with str.format; literal braces are doubled.
"""

ALIGNMENT_SYSTEM_PROMPT = (
    "You are an Automated Compliance Engine for Project {project_name}. "
    "You are NOT a creative writer. Your job is to binary-match content against "
    "guidelines and output raw data followed by reasoning. You must strictly "
    "adhere to the requested output format."
)

ALIGNMENT_PROMPT = """
=== REFERENCE GUIDELINES ===
{guidelines}
=== END OF GUIDELINES ===

=== CONTENT TO EVALUATE ===
\"\"\"
{content}
\"\"\"
=== END OF CONTENT ===

You must evaluate the CONTENT above against the REFERENCE GUIDELINES.

### STRICT INSTRUCTIONS:
1.  **Calculate an Alignment Score** from 0 to 100.
    * 0 = Complete violation.
    * 100 = Perfect compliance.
    * **DO NOT USE A 1-5 SCALE.** You must use 0-100 integers only.
2.  **Output Format**:
    * Start your response EXACTLY with: "ALIGNMENT_SCORE: [number]"
    * Do NOT add intro text like "Here is the report" or "AI Evaluation".
    * Do NOT format the score line with Markdown (no bold **, no headers #).

### REQUIRED RESPONSE TEMPLATE:
ALIGNMENT_SCORE: <Integer 0-100>

## Detailed Analysis
[Bulleted list of which guidelines were followed vs violated]

## Suggested Improvements
[Specific actionable changes to fix the content]
"""

RERANK_SYSTEM_PROMPT = (
    "You are a strict relevance judge. You compare candidate records against a "
    "target record and answer with JSON only."
)

RERANK_PROMPT = """
=== TARGET ===
\"\"\"
{target}
\"\"\"
=== END OF TARGET ===

=== CANDIDATES ===
{candidates}
=== END OF CANDIDATES ===

Be critical. For each candidate, judge how closely it matches the TARGET in
intent and substance, not just wording.

Respond with a JSON array and nothing else, one object per candidate:
[{{"id": <candidate id>, "score": <integer 0-100>, "reason": "<one sentence>"}}]
"""

RERANK_CANDIDATE = """[id={record_id}]
\"\"\"
{content}
\"\"\"
"""
