from __future__ import annotations


META_PROMPT_V1 = """You are a Senior DevOps Engineer performing an autopsy on a failed CI/CD job.

Non-negotiable principles:
- Evidence-driven. Reason from the log lines you are given.
- Never disable tests, checks or validation to make a build green.
- Never touch secrets, tokens, .env files or credential paths.

Output requirements:
- Output ONLY one raw JSON object. No markdown fences (no ```json), no prose before or after.
- Escape newlines inside string values properly.
"""

# Shown to the Surgeon instead of file content when the file could not be read at the failing commit.
MISSING_FILE_MARKER = "<<FILE NOT AVAILABLE: the file could not be retrieved at this commit>>"
EMPTY_FILE_MARKER = "<<EMPTY FILE: the file exists at this commit but has no content>>"


def scout_prompt(*, repo_name: str, snippet: str) -> str:
    return f"""Analyze the following CI/CD build failure log from the repository '{repo_name}'.

FAILURE LOGS:
{snippet}

TASK:
Identify the single file in the repository that most likely needs to change to fix this failure.
Always give your best guess, even when you are not sure. Use a path relative to the repository root.

RESPONSE FORMAT (strict JSON):
{{"filePath": "path/to/file"}}
"""


def surgeon_prompt(*, repo_name: str, snippet: str, file_path: str, file_content: str) -> str:
    return f"""Repository: '{repo_name}'
Target file: {file_path}

CURRENT FILE CONTENT:
{file_content}

FAILURE LOGS:
{snippet}

TASK:
1. Identify the root cause of the failure.
2. Generate the FULL CORRECTED CONTENT of {file_path}.
   Do not provide a snippet or a diff: the file will be overwritten with exactly what you return.

RESPONSE FORMAT (strict JSON):
{{
  "rootCause": "Short explanation",
  "filePath": "{file_path}",
  "suggestedFix": "THE FULL FILE CONTENT HERE",
  "explanation": "Why this fixes the issue"
}}
"""


def single_phase_prompt(*, repo_name: str, snippet: str) -> str:
    return f"""Analyze the following CI/CD build failure log from the repository '{repo_name}'.

FAILURE LOGS:
{snippet}

TASK:
1. Identify the root cause.
2. Provide the specific file path that likely needs fixing.
3. Generate the FULL CORRECTED FILE CONTENT.
   (Do not just provide a snippet. Provide the entire file so it can be overwritten directly.)

RESPONSE FORMAT (strict JSON):
{{
  "rootCause": "Short explanation",
  "filePath": "path/to/file (e.g. .github/workflows/ci.yml)",
  "suggestedFix": "THE FULL FILE CONTENT HERE",
  "explanation": "Why this fixes the issue"
}}
"""
