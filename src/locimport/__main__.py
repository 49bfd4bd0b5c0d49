from locimport.cli import main

main()
