from mcp_orchestrator.cli import main

main()
