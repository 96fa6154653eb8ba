from statussync.main import main

main()
