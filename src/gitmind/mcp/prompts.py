"""MCP prompt templates for common workflows."""

from gitmind.mcp.server import mcp


@mcp.prompt()
def plan_change(request: str, repo_id: str) -> str:
    """Generate a prompt that walks through one code change end to end."""
    return (
        f"I want to make the following change in repository '{repo_id}':\n\n"
        f"{request}\n\n"
        f"Please carry it out with the GitMind tools:\n"
        f"1. Use classify_intent on the request and report the intent and risk level\n"
        f"2. Use create_session (mode 'action'), then transition_session to PLANNING\n"
        f"3. Pick at most 8 relevant files and use compile_task\n"
        f"4. transition_session to EXECUTING and call execute_action with the file contents\n"
        f"5. On success transition to DONE and show me the commit message and patch; "
        f"on any error transition to FAILED and explain the error kind\n"
    )


@mcp.prompt()
def review_patch(patch: str) -> str:
    """Generate a prompt to review a patch before it is committed."""
    return (
        f"Please review this patch before it is committed:\n\n"
        f"{patch}\n\n"
        f"First run validate_patch on it and list every error it reports. Then check:\n"
        f"1. Whether each hunk does what its commit message says\n"
        f"2. Any risky change the automatic checks would not catch\n"
        f"3. Whether it touches files outside the intended scope\n"
    )
