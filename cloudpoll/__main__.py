from cloudpoll.cli import main

raise SystemExit(main())
