from tele_mcp.main import run

run()
