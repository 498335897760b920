from corsproxy.server import main

main()
