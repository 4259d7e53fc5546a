from mcplink.cli import main

main()
