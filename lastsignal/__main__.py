from lastsignal.cli import main

main()
