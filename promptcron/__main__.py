from promptcron.cli import main

raise SystemExit(main())
