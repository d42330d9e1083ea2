from loadstage.cli import main

raise SystemExit(main())
