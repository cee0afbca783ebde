"""Backend catalog: the immutable table of known tool backends."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Iterator

import yaml
from pydantic import ValidationError

from mcp_orchestrator.errors import OrchestratorError
from mcp_orchestrator.schemas import BackendDefinition, CategoryInfo, RuntimeKind

logger = logging.getLogger(__name__)

MODELCONTEXTPROTOCOL_SERVERS = "https://github.com/modelcontextprotocol/servers.git"

_NODE_ENV = {"NODE_ENV": "production"}
_PYTHON_ENV = {"PYTHONPATH": "."}


class CatalogError(OrchestratorError):
    """Raised when a catalog file cannot be loaded."""

    pass


class Catalog:
    """Read-only, ordered collection of backend definitions."""

    def __init__(self, definitions: Iterable[BackendDefinition]):
        ordered = tuple(definitions)
        index: dict[str, BackendDefinition] = {}
        for definition in ordered:
            if definition.id in index:
                raise CatalogError(f"Duplicate backend id in catalog: {definition.id}")
            index[definition.id] = definition
        self._definitions = ordered
        self._index = index

    def __iter__(self) -> Iterator[BackendDefinition]:
        return iter(self._definitions)

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, backend_id: object) -> bool:
        return backend_id in self._index

    def get(self, backend_id: str) -> BackendDefinition | None:
        return self._index.get(backend_id)

    def ids(self) -> list[str]:
        return [definition.id for definition in self._definitions]

    def position(self, backend_id: str) -> int:
        """Catalog order of a backend; unknown ids sort last."""
        for i, definition in enumerate(self._definitions):
            if definition.id == backend_id:
                return i
        return len(self._definitions)


def _npx_backend(
    backend_id: str,
    name: str,
    description: str,
    package: str,
    port: int,
    category: str,
    tools_count: int,
    required_env: tuple[str, ...],
    tool_category: str | None = None,
) -> BackendDefinition:
    return BackendDefinition(
        id=backend_id,
        name=name,
        description=description,
        source_url=MODELCONTEXTPROTOCOL_SERVERS,
        runtime=RuntimeKind.NODEJS,
        command="npx",
        args=("-y", package),
        default_port=port,
        category=category,
        tools_count=tools_count,
        required_env=required_env,
        env=dict(_NODE_ENV),
        tool_category=tool_category,
    )


DEFAULT_BACKENDS: tuple[BackendDefinition, ...] = (
    BackendDefinition(
        id="gohighlevel",
        name="GoHighLevel MCP",
        description=(
            "Customer relationship management and marketing automation platform with "
            "253 tools for lead generation, nurturing, and sales process automation"
        ),
        source_url="https://github.com/mastanley13/GoHighLevel-MCP.git",
        runtime=RuntimeKind.NODEJS,
        command="node",
        args=("dist/server.js",),
        default_port=8000,
        category="crm",
        tools_count=253,
        required_env=("GHL_API_KEY", "GHL_LOCATION_ID"),
        env={
            "GHL_BASE_URL": "https://services.leadconnectorhq.com",
            "NODE_ENV": "production",
            "PORT": "8000",
        },
        entrypoint="dist/server.js",
        tool_category="gohighlevel",
    ),
    BackendDefinition(
        id="meta-ads",
        name="Meta Ads MCP",
        description=(
            "Facebook and Instagram advertising platform with 22 tools for campaign "
            "management, audience targeting, and performance analytics"
        ),
        source_url="https://github.com/pipeboard-co/meta-ads-mcp.git",
        runtime=RuntimeKind.PYTHON,
        command="python",
        args=("-m", "meta_ads_mcp"),
        default_port=8001,
        category="advertising",
        tools_count=22,
        required_env=("META_ACCESS_TOKEN", "META_APP_ID", "META_APP_SECRET"),
        env=dict(_PYTHON_ENV),
        tool_category="meta-ads",
    ),
    BackendDefinition(
        id="google-ads",
        name="Google Ads MCP",
        description=(
            "Google Ads platform integration with 30+ tools for search advertising, "
            "display campaigns, and conversion tracking"
        ),
        source_url="https://github.com/cohnen/mcp-google-ads.git",
        runtime=RuntimeKind.PYTHON,
        command="python",
        args=("-m", "mcp_google_ads"),
        default_port=8002,
        category="advertising",
        tools_count=30,
        required_env=("GOOGLE_ADS_CUSTOMER_ID", "GOOGLE_ADS_DEVELOPER_TOKEN"),
        env=dict(_PYTHON_ENV),
        tool_category="google-ads",
    ),
    BackendDefinition(
        id="figma",
        name="Figma MCP",
        description=(
            "Design collaboration platform with 5 tools for accessing Figma files, "
            "adding comments, and viewing design nodes"
        ),
        source_url="https://github.com/MatthewDailey/figma-mcp.git",
        runtime=RuntimeKind.NODEJS,
        command="npx",
        args=("figma-mcp",),
        default_port=8003,
        category="design",
        tools_count=5,
        required_env=("FIGMA_ACCESS_TOKEN",),
        env=dict(_NODE_ENV),
        tool_category="design",
    ),
    _npx_backend(
        "github", "GitHub MCP",
        "Version control and development collaboration with 12 tools for repository "
        "management, issues, and pull requests",
        "@modelcontextprotocol/server-github", 8004, "development", 12,
        ("GITHUB_PERSONAL_ACCESS_TOKEN",), tool_category="development",
    ),
    _npx_backend(
        "slack", "Slack MCP",
        "Team communication and workspace management with 10 tools for messaging, "
        "channels, and integrations",
        "@modelcontextprotocol/server-slack", 8005, "communication", 10,
        ("SLACK_BOT_TOKEN",), tool_category="communication",
    ),
    _npx_backend(
        "notion", "Notion MCP",
        "All-in-one workspace with 7 tools for notes, databases, and collaborative documentation",
        "@modelcontextprotocol/server-notion", 8006, "productivity", 7,
        ("NOTION_API_KEY",), tool_category="productivity",
    ),
    _npx_backend(
        "stripe", "Stripe MCP",
        "Payment processing and billing with 12 tools for transactions, subscriptions, "
        "and customer management",
        "@modelcontextprotocol/server-stripe", 8007, "ecommerce", 12,
        ("STRIPE_SECRET_KEY",), tool_category="payments",
    ),
    _npx_backend(
        "google-maps", "Google Maps MCP",
        "Location services and mapping with 6 tools for geocoding, directions, and place searches",
        "@modelcontextprotocol/server-google-maps", 8008, "maps", 6,
        ("GOOGLE_MAPS_API_KEY",), tool_category="maps",
    ),
    _npx_backend(
        "brave-search", "Brave Search MCP",
        "Web search and data retrieval with 3 tools for search queries and result processing",
        "@modelcontextprotocol/server-brave-search", 8009, "web_browser", 3,
        ("BRAVE_SEARCH_API_KEY",), tool_category="search",
    ),
    _npx_backend(
        "gmail", "Gmail MCP",
        "Gmail integration with 9 tools for email management, sending, and organization",
        "@modelcontextprotocol/server-gmail", 8010, "email", 9,
        ("GMAIL_CREDENTIALS",), tool_category="email",
    ),
    _npx_backend(
        "puppeteer", "Puppeteer MCP",
        "Web scraping and automation with 5 tools for browser control and page interaction",
        "@modelcontextprotocol/server-puppeteer", 8011, "web_browser", 5,
        (), tool_category="web_browser",
    ),
    _npx_backend(
        "docker", "Docker MCP",
        "Container management with 8 tools for Docker operations, images, and deployments",
        "@modelcontextprotocol/server-docker", 8012, "cloud", 8,
        (), tool_category="development",
    ),
)


# Display metadata for catalog categories, in presentation order
CATEGORY_INFO: tuple[tuple[str, str, str], ...] = (
    ("design", "Design & Prototyping", "Design collaboration and prototyping tools"),
    ("development", "Development & Version Control", "Code repositories and development tools"),
    ("communication", "Communication & Collaboration", "Team messaging and collaboration platforms"),
    ("productivity", "Productivity & Project Management", "Note-taking and project management tools"),
    ("ecommerce", "E-commerce & Payments", "Online stores and payment processing"),
    ("advertising", "Advertising & Marketing", "Ad platforms and marketing automation"),
    ("crm", "CRM & Sales", "Customer relationship management"),
    ("maps", "Maps & Location", "Mapping and location services"),
    ("web_browser", "Web & Browser", "Web search and browser automation"),
    ("email", "Email & Communication", "Email services and communication tools"),
    ("cloud", "Cloud & Infrastructure", "Cloud services and infrastructure management"),
    ("financial", "Financial Services", "Banking and financial data services"),
    ("analytics", "Analytics & Data", "Data analysis and business intelligence"),
)


def default_catalog() -> Catalog:
    return Catalog(DEFAULT_BACKENDS)


def load_catalog(path: Path | None = None) -> Catalog:
    """Load the catalog from a YAML file, or the built-in table if no path.

    The file holds a top-level ``backends`` list whose items use the
    BackendDefinition field names.

    Raises:
        CatalogError: If the file is missing, unreadable, or invalid
    """
    if path is None:
        return default_catalog()

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise CatalogError(f"Cannot read catalog {path}: {e}") from e

    entries = data.get("backends") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise CatalogError(f"Catalog {path} must contain a 'backends' list")

    try:
        definitions = [BackendDefinition(**entry) for entry in entries]
    except (TypeError, ValidationError) as e:
        raise CatalogError(f"Invalid backend definition in {path}: {e}") from e

    logger.info(f"Loaded {len(definitions)} backend definitions from {path}")
    return Catalog(definitions)


def summarize_categories(catalog: Catalog) -> list[CategoryInfo]:
    """Per-category server and declared-tool counts; empty categories omitted."""
    summary = {
        cat_id: CategoryInfo(id=cat_id, name=name, description=description)
        for cat_id, name, description in CATEGORY_INFO
    }
    for definition in catalog:
        info = summary.get(definition.category)
        if info is None:
            # Categories outside the display table still get counted
            info = CategoryInfo(
                id=definition.category,
                name=definition.category.replace("_", " ").title(),
                description="",
            )
            summary[definition.category] = info
        info.server_count += 1
        info.tools_count += definition.tools_count

    return [info for info in summary.values() if info.server_count > 0]
