"""Prompt constants and helpers for the goal-planning assistant."""

SYSTEM_PROMPT_BASE = """
You are a financial planning assistant for a goal and investment tracker.
Amounts are in {currency} unless the user says otherwise.

Rules:
- Use tools for any factual lookup or data-changing action. Never invent goals, assets, prices or balances.
- Never ask the user for internal ids. Find goals and assets with search_goals_by_name or search_assets_by_name.
- Before delete_goal_by_name or delete_asset, run the matching search tool, show the match and get explicit confirmation.
- If a search returns several matches, list them and ask which one is meant. Never pick one yourself.
- If a tool returns success=false, explain the error in plain words or retry with corrected arguments.
- If required fields are missing, ask a short clarification question.
- Keep answers concise and practical. Do not output SQL or internal database details.
""".strip()


def build_system_prompt(caller_id: str, currency: str = "INR", client_context: str = "") -> str:
    """
    Server-owned prompt scoped to the authenticated caller.

    Client-supplied system text is appended as context only and cannot replace
    the rules above.
    """
    prompt = (
        f"{SYSTEM_PROMPT_BASE.format(currency=currency)}\n\n"
        f"Authenticated user id: {caller_id}. Every tool acts on this user's data only."
    )
    if not client_context.strip():
        return prompt

    return (
        f"{prompt}\n\n"
        "Additional context from the client application:\n"
        f"{client_context.strip()}"
    )
