# Controller package
