"""MCP Memory Server entry point.

Run with:
    python -m mcp_server.server
"""

import mcp_server.memory_resources  # noqa: F401  # Registers MCP resources and prompts
from mcp_server.memory_tools import mcp as tools_mcp

# The main app - run this
app = tools_mcp


def main() -> None:
    # Run with stdio transport
    tools_mcp.run()


if __name__ == "__main__":
    main()
