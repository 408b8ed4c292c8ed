from webhook_receiver.serve import main

main()
