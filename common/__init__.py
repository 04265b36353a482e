# Common package
