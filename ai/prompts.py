"""Prompt text for PRD generation and refinement."""
from typing import Optional

SYSTEM_PROMPT = """You are an expert product manager and technical architect. Your task is to create detailed, professional Product Requirements Documents (PRDs) that are specifically formatted for AI coding assistants like Cursor, Lovable, and Replit.

When generating a PRD, you should:

1. **Understand the Context**: Analyze the user's requirements thoroughly. If they've uploaded project files, understand the existing architecture.

2. **Structure the PRD Properly** with these sections:
   - **Project Overview**: Brief description, goals, and target users
   - **Technical Stack**: Recommended technologies, frameworks, and tools
   - **Core Features**: Detailed breakdown of features with acceptance criteria
   - **User Stories**: Clear user stories in "As a [user], I want [feature], so that [benefit]" format
   - **Database Schema**: If applicable, include table structures and relationships
   - **API Endpoints**: RESTful endpoints with methods, parameters, and responses
   - **UI/UX Requirements**: Page layouts, components, and user flows
   - **Step-by-Step Implementation Plan**: Numbered steps for the AI to follow
   - **Testing Requirements**: What should be tested and how
   - **Edge Cases & Error Handling**: Potential issues and how to handle them

3. **Format for AI Assistants**:
   - Use clear markdown formatting
   - Include code snippets where helpful
   - Be specific and actionable
   - Avoid ambiguity
   - Include file structure recommendations

4. **Platform-Specific Formatting**:
   - For **Cursor**: Include file paths and detailed code comments
   - For **Lovable**: Focus on component structure and visual requirements
   - For **Replit**: Include environment setup and deployment notes

Be thorough but concise. Every instruction should be clear enough that an AI coding assistant can follow it without additional clarification."""

# Target platforms offered to users; any other non-empty name is passed through.
PLATFORMS = {
    "cursor": "Cursor",
    "lovable": "Lovable",
    "replit": "Replit",
}
DEFAULT_PLATFORM_LABEL = "AI coding assistants"

REFINEMENT_SEPARATOR = "\n\n--- Additional Requirements ---\n\n"
ENHANCED_SUFFIX = " (Enhanced)"
UNTITLED = "Untitled PRD"
TITLE_WORDS = 6
TITLE_MAX_CHARS = 50


def platform_label(platform: Optional[str]) -> str:
    if not platform or not platform.strip():
        return DEFAULT_PLATFORM_LABEL
    return PLATFORMS.get(platform.strip().lower(), platform.strip())


def _context_block(project_context: Optional[str]) -> str:
    if not project_context or not project_context.strip():
        return ""
    return (
        "**Existing Project Context:**\n"
        f"{project_context}\n\n"
        "Please analyze this existing project and create a PRD that builds upon or improves "
        "the current architecture.\n"
    )


def build_generation_message(requirements: str, platform: str, project_context: Optional[str] = None) -> str:
    """User message for a fresh PRD. ``requirements`` is embedded verbatim."""
    return (
        "\nGenerate a detailed PRD for the following project requirements. "
        f"This PRD will be used with {platform_label(platform)} (platform: {platform or 'unspecified'}).\n\n"
        "**User Requirements:**\n"
        f"{requirements}\n\n"
        f"{_context_block(project_context)}\n"
        "Please generate a comprehensive, well-structured PRD that an AI coding assistant can "
        "follow step-by-step to implement this project.\n"
    )


def build_refinement_message(
    existing_prd: str,
    additional_requirements: str,
    platform: str,
    project_context: Optional[str] = None,
) -> str:
    """User message asking for a complete revised PRD."""
    return (
        "\nHere is an existing PRD that the user has already approved. "
        f"It is used with {platform_label(platform)} (platform: {platform or 'unspecified'}).\n\n"
        "**Existing PRD:**\n"
        f"{existing_prd}\n\n"
        "**Additional Requirements:**\n"
        f"{additional_requirements}\n\n"
        f"{_context_block(project_context)}\n"
        "Rewrite the PRD so that it incorporates the additional requirements. Keep everything "
        "from the existing PRD that is still valid, update sections affected by the new "
        "requirements, and return the complete enhanced PRD, not only the changes.\n"
    )


def derive_title(requirements: str) -> str:
    """First six words of the requirements, capped at 50 characters."""
    words = requirements.split()
    if not words:
        return UNTITLED
    title = " ".join(words[:TITLE_WORDS])
    if len(title) > TITLE_MAX_CHARS:
        title = title[:TITLE_MAX_CHARS] + "..."
    return title
