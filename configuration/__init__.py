# Configuration package
