from cropwise.cli import main

main()
