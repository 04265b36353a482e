# Analyzer package
