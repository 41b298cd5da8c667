from polybot.cli import main

main()
