from deadswitch.cli import main

raise SystemExit(main())
