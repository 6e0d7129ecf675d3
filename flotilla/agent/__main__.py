from flotilla.agent.loop import main

main()
