from servicehub.server import main


raise SystemExit(main())
