# Monitor package
