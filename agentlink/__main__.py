from agentlink.app import main

main()
