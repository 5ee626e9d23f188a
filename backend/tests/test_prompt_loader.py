from codebase_testing_agent.services.agents.prompt_loader import (
    extract_json_payload,
    load_agent_prompt,
    safe_json_loads,
    strip_markdown_fences,
)
from codebase_testing_agent.storage.models import AgentRole


def test_every_dispatched_role_has_a_system_prompt():
    for role in (
        AgentRole.ANALYZER,
        AgentRole.RISK,
        AgentRole.TEST,
        AgentRole.ENVIRONMENT,
    ):
        assert load_agent_prompt(role.value, "system_prompt.md").strip()


def test_user_prompts_accept_context():
    template = load_agent_prompt("test", "user_prompt_test_generation.md")
    rendered = template.format(context='{"category": "api"}')

    assert '{"category": "api"}' in rendered
    assert load_agent_prompt("test", "user_prompt_missing.md") == ""


def test_json_extraction_from_llm_output():
    assert strip_markdown_fences("```json\n{\"a\": 1}\n```") == '{"a": 1}'
    assert extract_json_payload('Result: {"items": [1, 2]} done') == '{"items": [1, 2]}'
    assert extract_json_payload('[{"name": "x"}] trailing') == '[{"name": "x"}]'
    assert safe_json_loads("no json here") is None
    assert safe_json_loads("{broken: json}") is None
