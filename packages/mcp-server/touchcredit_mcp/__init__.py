"""
TouchCredit MCP Server - Model Context Protocol server for the attribution engine.

Exposes attribution capabilities to MCP clients:
- Touchpoint and conversion ingestion
- Attribution results and model comparison
- Channel performance, ROI/ROAS and trends
- Historical recompute jobs

Usage:
    # Via CLI
    touchcredit-mcp

    # Via Python
    from touchcredit_mcp import server
    server.main()

    # Via .mcp.json
    {
        "mcpServers": {
            "touchcredit": {
                "command": "touchcredit-mcp"
            }
        }
    }
"""

__version__ = "0.1.0"
