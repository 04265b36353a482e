# Validator package
