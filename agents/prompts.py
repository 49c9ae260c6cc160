"""Prompts for the coding agent.

- CODING_AGENT_PROMPT: system prompt describing the scratch workspace
- build_generation_prompt: the task prompt for one generation
- MAX_ITERATIONS_NOTICE: injected when the agent is about to run out of turns
"""

CODING_AGENT_PROMPT = """\
You are an expert front-end engineer building small static web projects.

## Workspace Facts
- Your tools operate on an empty project directory; paths are relative to its root.
- The project is served as static files by `python3 -m http.server`, so
  `index.html` at the root is the entry point.
- There is no build step and no package manager. Use plain HTML, CSS and
  JavaScript. CDN links are allowed.

## Operating Discipline
1. Write complete files with `write_file`; never leave placeholders.
2. Use `list_files`/`read_file` to inspect what you already wrote before editing it.
3. Keep every file linked from `index.html` with relative paths.
4. When the project is complete, reply with a short summary and no tool calls.
"""


def compose_prompt_sections(*sections: str) -> str:
    """Compose prompt sections into a single deterministic prompt."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


def build_generation_prompt(description: str) -> str:
    """Build the user prompt for a generation from a project description."""
    return f"""Create a complete HTML project based on this description: "{description.strip()}"

Please create the necessary files (HTML, CSS, and JavaScript if needed) for a fully functional project.
Save all files in the current working directory.

Requirements:
- Create clean, well-structured HTML
- Include inline or separate CSS for styling
- Add comments to explain the code
- Make it responsive and modern
- Ensure all files are properly linked

Start by creating the files now."""


def get_coding_system_prompt(extra_context: str | None = None) -> str:
    return compose_prompt_sections(CODING_AGENT_PROMPT, extra_context or "")


MAX_ITERATIONS_NOTICE = (
    "You have {remaining} turn(s) left. Finish writing any incomplete files now."
)
